"""Load configuration overrides from YAML.

Optional file path via env `LB_CONFIG_FILE`, default `configs/ladderbot.yaml`.
Returns a flat dict of Settings field name -> value. Nested sections are
flattened with an underscore, so

    trailing:
      enabled: true
      activation_percent: 1.5

yields ``trailing_enabled`` and ``trailing_activation_percent``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{name}_"))
        else:
            flat[name] = value
    return flat


def load_overrides(path: str | None = None) -> Dict[str, Any]:
    if path is None:
        path = os.getenv("LB_CONFIG_FILE", "configs/ladderbot.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
    return _flatten(data)
