"""Logging configuration for the CLI and server."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "anthropic", "openai", "pdfminer", "PIL")


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route log records through rich. Safe to call more than once."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="[%X]"))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
