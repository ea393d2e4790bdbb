#!/usr/bin/env python3
"""Main entry point for the live event engine."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from .core.bus import Subscription
from .core.engine import LiveEventEngine
from .core.models import ConnectionState, Event
from .core.settings import Settings

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False) -> None:
    """Set up logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
        ],
    )

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def format_event(event: Event) -> str:
    """One human-readable line per event."""
    who = event.actor.display_name or event.actor.username
    text = f"[{event.platform.value}] {event.type.value} {who}"
    if event.counterpart is not None:
        text += f" <- {event.counterpart.display_name or event.counterpart.username}"
    if event.amount is not None:
        text += f" {event.amount:g} {event.currency or ''}".rstrip()
    if event.message:
        text += f": {event.message}"
    if not event.final:
        text += " (updating)"
    return text


def format_state(state: ConnectionState) -> str:
    text = f"[{state.platform.value}] {state.status.value}"
    if state.reason:
        text += f" ({state.reason})"
    if state.terminal:
        text += " [needs reconfiguration]"
    return text


async def _print_events(sub: Subscription, as_json: bool) -> None:
    while True:
        event = await sub.events.get()
        print(json.dumps(event.to_dict()) if as_json else format_event(event), flush=True)


async def _print_states(sub: Subscription, as_json: bool) -> None:
    while True:
        state = await sub.states.get()
        if as_json:
            payload = {
                "platform": state.platform.value,
                "status": state.status.value,
                "reason": state.reason,
                "terminal": state.terminal,
            }
            print(json.dumps({"connection": payload}), flush=True)
        else:
            logger.info(format_state(state))


async def run_headless(
    settings: Settings, as_json: bool = False, config_path: Path | None = None
) -> None:
    """Run the engine and print events until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends run()
            pass

    engine = LiveEventEngine(settings, persist=lambda s: s.save(config_path))
    with engine.subscribe() as sub:
        printers = [
            asyncio.create_task(_print_events(sub, as_json)),
            asyncio.create_task(_print_states(sub, as_json)),
        ]
        try:
            async with engine:
                await stop.wait()
        finally:
            for task in printers:
                task.cancel()
            await asyncio.gather(*printers, return_exceptions=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="livestream-events",
        description="Aggregate Twitch, YouTube and TikTok live events into one stream.",
    )
    parser.add_argument("--config", type=Path, help="settings.json to use")
    parser.add_argument("--json", action="store_true", help="print events as JSON lines")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.debug)

    settings = Settings.load(args.config)
    settings.apply_env()
    if not (settings.twitch.enabled or settings.youtube.enabled or settings.tiktok.enabled):
        logging.error("All platforms are disabled; nothing to do")
        return 1

    try:
        asyncio.run(run_headless(settings, as_json=args.json, config_path=args.config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
