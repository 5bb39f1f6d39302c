"""
ED25519 request signing for the Backpack REST API.

The signed string is ``instruction=<type>`` followed by the request params in
key order, then ``timestamp`` and ``window``:

    instruction=orderExecute&orderType=Limit&price=98.5&...&timestamp=1700000000000&window=5000
"""

from __future__ import annotations

import base64
from typing import Any, Dict, Optional

from nacl.signing import SigningKey


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonical_string(
    instruction: str,
    params: Optional[Dict[str, Any]],
    timestamp: int,
    window: int,
) -> str:
    parts = [f"instruction={instruction}"]
    for key in sorted(params or {}):
        value = params[key]
        if value is None:
            continue
        parts.append(f"{key}={_format_value(value)}")
    parts.append(f"timestamp={timestamp}")
    parts.append(f"window={window}")
    return "&".join(parts)


class Ed25519Signer:
    """Signs canonical request strings with a base64-encoded ED25519 seed."""

    def __init__(self, secret_b64: str) -> None:
        seed = base64.b64decode(secret_b64)
        if len(seed) == 64:
            # Full keypair export; the seed is the first half
            seed = seed[:32]
        if len(seed) != 32:
            raise ValueError("API secret must decode to a 32-byte ED25519 seed")
        self._key = SigningKey(seed)

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(bytes(self._key.verify_key)).decode("ascii")

    def sign(
        self,
        instruction: str,
        params: Optional[Dict[str, Any]],
        timestamp: int,
        window: int,
    ) -> str:
        message = canonical_string(instruction, params, timestamp, window).encode("utf-8")
        signed = self._key.sign(message)
        return base64.b64encode(signed.signature).decode("ascii")
