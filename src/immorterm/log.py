"""
Logging setup for immorterm.

Modules log through ``logging.getLogger(__name__)``; the CLI calls
configure_logging() once to route records to a rich console handler and,
optionally, a plain log file inside the project's state directory.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "immorterm"
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(
    debug: bool = False,
    log_file: Path | str | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        debug: Emit DEBUG records when True, INFO otherwise.
        log_file: Optional path of a file that receives every record.
        console: Rich console to render to. Defaults to stderr.

    Returns:
        The configured ``immorterm`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(logging.DEBUG if debug or log_file is not None else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=debug,
    )
    rich_handler.setLevel(level)
    logger.addHandler(rich_handler)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger
