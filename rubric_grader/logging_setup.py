"""Logging configuration for the command line."""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Libraries that log every HTTP request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def setup_logging(
    level: int | str = logging.INFO,
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level, as a number or a name such as "DEBUG".
        log_file: Optional path of a UTF-8 log file receiving full records.
        console: Console the rich handler writes to; shared with progress bars.
    """
    handlers: list[logging.Handler] = [
        RichHandler(console=console, show_path=False, rich_tracebacks=True)
    ]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
