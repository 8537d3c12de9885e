#!/usr/bin/env python3
"""
Debug script to isolate browser launch / WhatsApp Web issues for one channel, without the HTTP server.
Run with: python scripts/debug_connect.py [config_path] [--channel=3000] [--debug]
Prints executable diagnostics, launches the channel's profile, and logs every connection event for 60s.
"""

import asyncio
import json
import logging
import os
import sys

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)
os.chdir(_PROJECT_ROOT)

# Parse args before imports
debug = "--debug" in sys.argv
channel = next((a.split("=", 1)[1] for a in sys.argv[1:] if a.startswith("--channel=")), None)
args = [a for a in sys.argv[1:] if not a.startswith("--")]
config_path = args[0] if args else None
if config_path and not os.path.isabs(config_path):
    config_path = os.path.join(_PROJECT_ROOT, config_path)

logging.basicConfig(
    level=logging.DEBUG if debug else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    from pathlib import Path

    from wagate.config.settings import get_browser_config, get_channels_config, get_session_config, read_config
    from wagate.connector.executable import ExecutableResolver
    from wagate.connector.whatsapp_web import WhatsAppWebConnection, ensure_backend_available

    cfg, resolved = read_config(config_path)
    browser_cfg = get_browser_config(cfg)
    channel_id = channel or get_channels_config(cfg)["default"]
    session_dir = Path(get_session_config(cfg)["data_dir"]) / f"session-{channel_id}"
    logger.info("Config: %s channel=%s session=%s", resolved or "(defaults)", channel_id, session_dir)

    logger.info("Step 1: playwright import...")
    ensure_backend_available()

    logger.info("Step 2: executable diagnostics...")
    resolver = ExecutableResolver.from_config(browser_cfg)
    print(json.dumps(resolver.diagnostics(), indent=2))

    logger.info("Step 3: launch + load WhatsApp Web...")
    conn = WhatsAppWebConnection(channel_id, session_dir, browser_cfg, resolver)
    conn.on_event(lambda e: logger.info("event %s artifact=%s reason=%s", e.kind.value, bool(e.artifact), e.reason))
    try:
        await conn.initialize()
        logger.info("Launched with executable=%s", conn.executable_path or "(auto)")
        for _ in range(12):
            await asyncio.sleep(5)
            logger.info("state=%s", await conn.get_state())
    finally:
        await conn.destroy()
    logger.info("Done.")


if __name__ == "__main__":
    asyncio.run(main())
