from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import uvicorn

from calmirror.config_manager import ConfigManager
from calmirror.state_store import StateStore
from calmirror.sync_engine import SyncEngine


def _configure_logging(config_path: str) -> None:
    level_name = ConfigManager(config_path).load().sync.log_level
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def serve() -> None:
    host = os.getenv("CALMIRROR_HOST", "0.0.0.0")
    port = int(os.getenv("CALMIRROR_PORT", "8080"))
    uvicorn.run("calmirror.web_admin:create_app", factory=True, host=host, port=port, reload=False)


def sync_once(config_path: str, state_path: str) -> int:
    engine = SyncEngine(ConfigManager(config_path), StateStore(state_path))
    result = engine.run_once(trigger="cli")
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.status == "error" else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="calmirror", description="Mirror an ICS feed into Google Calendar.")
    parser.add_argument("command", nargs="?", choices=("serve", "sync"), default="serve")
    args = parser.parse_args(argv)

    config_path = os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALMIRROR_STATE_PATH", "data/state.db")
    _configure_logging(config_path)

    if args.command == "sync":
        return sync_once(config_path, state_path)
    serve()
    return 0


if __name__ == "__main__":
    sys.exit(main())
