"""
Logging setup.

Console output goes through rich; the deployment additionally keeps a plain
text log file with timestamped, severity-prefixed lines.
"""

import logging
from pathlib import Path

from rich.logging import RichHandler

from llamadeploy.branding import UI_LOGGER, console

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> logging.Logger:
    """Configure the ``llamadeploy`` logger.

    Args:
        log_file: Optional path of a log file that receives every record.
        verbose: Emit DEBUG records on the console.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("llamadeploy")
    logger.setLevel(logging.DEBUG)

    # Re-running setup (tests, repeated CLI calls in one process) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console,
        show_path=False,
        markup=False,
        log_time_format=f"[{DATE_FORMAT}]",
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Status lines are already on the console; only the log file takes them
    console_handler.addFilter(lambda record: not record.name.startswith(UI_LOGGER))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
