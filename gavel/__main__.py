"""Entry point: python -m gavel"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys

from gavel.config import GavelConfig
from gavel.main import GavelClient


def build_config(argv: list[str] | None = None) -> tuple[GavelConfig, bool]:
    parser = argparse.ArgumentParser(prog="gavel", description="Live auction sync client")
    parser.add_argument("--socket-url", help="channel endpoint (ws://...)")
    parser.add_argument("--api-url", help="snapshot API base URL (http://...)")
    parser.add_argument("--no-auto-reconnect", action="store_true",
                        help="do not reconnect after a dropped channel")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--no-console", action="store_true",
                        help="run without the stdin command console")
    args = parser.parse_args(argv)

    overrides = {}
    if args.socket_url:
        overrides["socket_url"] = args.socket_url
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.no_auto_reconnect:
        overrides["auto_reconnect"] = False
    if args.log_level:
        overrides["log_level"] = args.log_level
    return dataclasses.replace(GavelConfig(), **overrides), not args.no_console


def main() -> None:
    cfg, console = build_config()
    client = GavelClient(cfg)
    try:
        asyncio.run(client.run(console=console))
    except KeyboardInterrupt:
        print("\nGavel shutting down.")
        sys.exit(0)


if __name__ == "__main__":
    main()
