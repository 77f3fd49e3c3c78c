from __future__ import annotations

import argparse
import json
import sys
import threading
import time
from typing import List, Optional

import uvicorn

from roofmon.core.alerts.notifiers import LoggingNotifier
from roofmon.core.config import load_config
from roofmon.core.errors import ConfigError
from roofmon.core.logger import setup_logging
from roofmon.core.service import MonitoringService
from roofmon.web.api import create_app


class WebServerHandle:
    def __init__(self, *, app, host: str, port: int, logger):  # noqa: ANN001
        self.app = app
        self.host = host
        self.port = port
        self.logger = logger
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        cfg = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="info")
        self._server = uvicorn.Server(cfg)

        def run() -> None:
            assert self._server is not None
            self._server.run()

        self._thread = threading.Thread(target=run, name="roofmon-web", daemon=True)
        self._thread.start()
        self.logger.info(f"Web server started on http://{self.host}:{self.port}")

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=3.0)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="roofmon: dashboard telemetry, alerting and self-healing")
    ap.add_argument("--config", default=None, help="Path to monitoring JSON config (defaults when omitted or missing).")
    ap.add_argument("--log-dir", default="logs", help="Directory for rotating log files.")
    ap.add_argument("--serve", action="store_true", help="Serve the monitoring web surface.")
    ap.add_argument("--host", default="127.0.0.1", help="Bind host for --serve.")
    ap.add_argument("--port", type=int, default=8787, help="Bind port for --serve.")
    ap.add_argument("--component", action="append", default=[], help="Register a component with default thresholds and recovery actions (repeatable).")
    ap.add_argument("--print-stats", action="store_true", help="Initialize, print service stats as JSON and exit.")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = setup_logging(args.log_dir)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"{e.user_message} {e.context}")
        return 2

    service = MonitoringService(cfg, logger=logger, notifier=LoggingNotifier(logger))
    service.init()
    for name in args.component:
        service.register_component(name)

    if args.print_stats:
        print(json.dumps(service.get_stats(), indent=2, default=str))
        service.teardown()
        return 0

    web: Optional[WebServerHandle] = None
    if args.serve:
        web = WebServerHandle(app=create_app(service, logger=logger), host=args.host, port=args.port, logger=logger)
        web.start()

    logger.info("roofmon running. Ctrl+C to stop.")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    finally:
        if web is not None:
            web.stop()
        service.teardown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
