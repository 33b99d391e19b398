"""CLI entrypoint."""

from __future__ import annotations

import argparse
import logging

import anyio
import logfire

from golden_axe.config import Config
from golden_axe.runner import run_bot


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="golden-axe",
        description=(
            "Telegram bot letting group admins set custom member titles. "
            "Configured through GOLDEN_AXE_* environment variables."
        ),
    )
    parser.add_argument(
        "--log",
        default=None,
        help="Log level override (e.g. DEBUG, INFO). Defaults to GOLDEN_AXE_LOG.",
    )
    parser.add_argument(
        "--mode",
        choices=["poll", "webhook"],
        default=None,
        help="Update source override. Defaults to GOLDEN_AXE_MODE (poll).",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logfire.configure(send_to_logfire="if-token-present", service_name="golden-axe")
    logging.basicConfig(level=level, handlers=[logfire.LogfireLoggingHandler()])


async def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = _parse_cli_args(argv)
    overrides = {
        key: value
        for key, value in (("log", args.log), ("mode", args.mode))
        if value is not None
    }
    config = Config(**overrides)  # type: ignore[call-arg]
    configure_logging(config.log)
    await run_bot(config)


def entrypoint() -> None:
    anyio.run(main)
