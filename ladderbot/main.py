"""
Entry point wiring all components.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from ladderbot.app import LadderApp
from ladderbot.config.config import Settings
from ladderbot.config.validator import validate_and_log
from ladderbot.infra.logging_cfg import build_logger
from ladderbot.monitoring.alerting import AlertSeverity, configure_alerts
from ladderbot.monitoring.metrics import LadderMetrics, start_metrics_server

log = logging.getLogger("ladderbot")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ladderbot", description="Laddered entry bot for perpetual futures")
    parser.add_argument("--config", help="YAML overrides file (default: $LB_CONFIG_FILE or configs/ladderbot.yaml)")
    parser.add_argument("--check-config", action="store_true", help="Validate configuration and exit")
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = Settings.load(args.config)
    build_logger("ladderbot", level=getattr(logging, cfg.log_level.upper(), logging.INFO), file_path=cfg.log_file)

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        return 1
    if args.check_config:
        log.info(json.dumps({"event": "config_ok", **cfg.dump()}, default=str))
        return 0

    alert_manager = configure_alerts(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.WARNING,
        enabled=cfg.alert_enabled,
        bot_name="LadderBot",
    )
    metrics = LadderMetrics()
    if start_metrics_server(metrics, cfg.metrics_port):
        log.info(json.dumps({"event": "metrics_server_started", "port": cfg.metrics_port}))

    app = LadderApp(cfg, metrics=metrics, alerts=alert_manager)
    log.info(json.dumps({"event": "startup", "symbol": cfg.symbol, "side": cfg.side.value}))
    await alert_manager.alert_startup(
        cfg.symbol,
        side=cfg.side.value,
        total_amount=cfg.total_amount,
        leverage=cfg.leverage,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    reason = "normal"

    def request_stop() -> None:
        stop_event.set()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            pass

    try:
        await app.start()
        halted = asyncio.create_task(app.wait_halted())
        stopped = asyncio.create_task(stop_event.wait())
        done, pending = await asyncio.wait({halted, stopped}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if halted in done:
            reason = f"halted:{app.controller.get_state()['halt_reason']}"
        log.info("Shutdown requested, cleaning up...")
    finally:
        try:
            await app.stop()
        except Exception as exc:
            log.error(json.dumps({"event": "shutdown_error", "step": "app_stop", "error": str(exc)}))
        try:
            await alert_manager.alert_shutdown(reason)
            await alert_manager.close()
        except Exception as exc:
            log.error(json.dumps({"event": "shutdown_error", "step": "alerts", "error": str(exc)}))
        log.info("Shutdown complete")
    return 0 if reason == "normal" else 2


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBot stopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
