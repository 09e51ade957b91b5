"""
main.py — chatbridge Entry Point

Usage:
    chatbridge                                  # Telegram adapter, default config
    chatbridge --interface console              # relay to/from this terminal
    chatbridge --config path/to/config.yaml
    chatbridge --log-level DEBUG
    chatbridge send "[Survival] <Alice> hi" --token secret   # act as the game
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatbridge",
        description="chatbridge — relay between a game server and chat platforms",
    )
    parser.add_argument(
        "--interface",
        choices=["telegram", "console"],
        default="telegram",
        help="Chat platform adapter to run (default: telegram).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $CHATBRIDGE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )

    sub = parser.add_subparsers(dest="subcommand")
    send = sub.add_parser("send", help="Connect as the game peer and send one message.")
    send.add_argument("message", help="Message text, e.g. '[Survival] <Alice> hi'")
    send.add_argument("--url", default=None,
                      help="Gateway URL (default: ws://127.0.0.1:<gateway.port>)")
    send.add_argument("--token", default=None, help="Access token (default: $GATEWAY_TOKEN)")
    send.add_argument("--wait", type=float, default=0.0,
                      help="Seconds to wait for, and print, envelopes sent back")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from chatbridge.config.settings import ConfigError, load_settings
    from chatbridge.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("chatbridge.main")
    return settings, log


async def main(argv: list[str] | None = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = parse_args(argv)

    if args.subcommand == "send":
        return await _run_send(args)

    settings, log = bootstrap(args)
    log.info("chatbridge.starting", interface=args.interface,
             port=settings.gateway.port, channels=sorted(settings.channels))

    missing = settings.validate_required_for_interface(args.interface)
    if missing:
        log.error("chatbridge.startup_failed",
                  reason="Missing required environment variables", missing=missing)
        print(
            f"\n❌  Missing required environment variables: {', '.join(missing)}\n"
            f"    Copy .env.example → .env and fill in the values.\n",
            file=sys.stderr,
        )
        return 1

    from chatbridge.exceptions import PortInUseError, TransportError

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        if args.interface == "telegram":
            from chatbridge.interfaces.telegram import run_telegram
            await run_telegram(settings, log, stop_event)
        else:
            from chatbridge.interfaces.console import run_console
            await run_console(settings, log, stop_event)
    except PortInUseError as e:
        log.error("chatbridge.startup_failed", reason="port in use", port=e.port)
        print(
            f"\n❌  Port {e.port} is already in use.\n"
            f"    Stop the other process or change gateway.port in config.yaml.\n",
            file=sys.stderr,
        )
        return 1
    except TransportError as e:
        log.error("chatbridge.startup_failed", reason=str(e))
        print(f"\n❌  {e}\n", file=sys.stderr)
        return 1

    log.info("chatbridge.stopped")
    return 0


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run()
            pass


async def _run_send(args: argparse.Namespace) -> int:
    """``chatbridge send``: act as the game peer for a single message."""
    import os

    import websockets

    from chatbridge.config.settings import load_settings
    from chatbridge.gateway.gateway_client import RelayClient

    url = args.url
    if url is None:
        port = load_settings(args.config).gateway.port
        url = f"ws://127.0.0.1:{port}"
    token = args.token or os.environ.get("GATEWAY_TOKEN")

    try:
        async with RelayClient(url, token=token) as client:
            await client.send(args.message)
            if args.wait > 0:
                try:
                    while True:
                        envelope = await client.receive(timeout=args.wait)
                        print(f"{envelope.sender}: {envelope.message}")
                except asyncio.TimeoutError:
                    pass
    except websockets.InvalidStatus as e:
        print(f"\n❌  Gateway refused the connection: HTTP {e.response.status_code}\n",
              file=sys.stderr)
        return 1
    except OSError as e:
        print(f"\n❌  Could not reach {url}: {e}\n", file=sys.stderr)
        return 1
    return 0


def main_sync() -> None:
    """Synchronous entry point for console_scripts (pyproject.toml)."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    main_sync()
