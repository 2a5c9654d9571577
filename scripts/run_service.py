#!/usr/bin/env python3
"""
Run the relay service with the in-process loopback transport.

Usage:
    python scripts/run_service.py
    python scripts/run_service.py --config config/settings.yaml
    python scripts/run_service.py --profile sales --profile support
"""
import argparse
import asyncio
import logging
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv


def configure_logging(debug: bool):
    level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


async def run(config_path: str = None, profiles: list[str] = None):
    from config.settings import load_settings
    from core.runtime import ProfileRuntime

    settings = load_settings(config_path)
    if profiles:
        settings.profiles = profiles
    configure_logging(settings.debug)

    runtime = ProfileRuntime.build(settings)
    await runtime.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.stop()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Profile relay service")
    parser.add_argument("--config", default=None, help="Path to settings YAML (default: $RELAY_CONFIG)")
    parser.add_argument("--profile", action="append", dest="profiles",
                        help="Profile id to start (repeatable; overrides the config)")
    args = parser.parse_args()
    try:
        asyncio.run(run(args.config, args.profiles))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
