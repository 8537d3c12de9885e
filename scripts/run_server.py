#!/usr/bin/env python3
"""Start the WhatsApp Web HTTP gateway (wagate.server.app).

Usage: python scripts/run_server.py [config/config.yaml]

Exits 1 when the browser automation library (Playwright) cannot be imported."""

import logging
import os
import sys

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)
os.chdir(_PROJECT_ROOT)

logging.basicConfig(
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    level=logging.INFO,
)
logger = logging.getLogger("run_server")


def main() -> None:
    from wagate.config.settings import read_config
    from wagate.connector.whatsapp_web import ensure_backend_available
    from wagate.core.errors import LibraryLoadFailure

    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    config_path = args[0] if args else None
    if config_path and not os.path.isabs(config_path):
        config_path = os.path.join(_PROJECT_ROOT, config_path)
    config, resolved = read_config(config_path)
    logger.info("config: %s", resolved or "(built-in defaults)")

    try:
        ensure_backend_available()
    except LibraryLoadFailure as e:
        logger.critical("%s; install it with: pip install playwright && playwright install chromium", e)
        sys.exit(1)

    from wagate.server.app import run_server

    run_server(config)


if __name__ == "__main__":
    main()
