import logging
import logging.handlers
import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

try:
    __version__ = version("recordsheet")
except PackageNotFoundError:  # pragma: no cover
    # package is not installed
    __version__ = "0.0.0"

CONSOLE_FORMAT = "%(levelname)-8s|%(message)s"
FILE_FORMAT = "%(asctime)s|%(name)-20s|%(levelname)-8s|%(message)s"
LOGLEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Note that nothing is passed to getLogger to set the "root" logger
logger = logging.getLogger()


def setup_logging(loglevel: int = logging.INFO, logfile: Path | None = None):
    """
    Setup logging to console and optionally to a rotating log file.

    The default loglevel is INFO. It can be overridden with the environment
    variable LOGLEVEL. Warnings that openpyxl issues while loading workbooks
    (unsupported extensions, data validation, ...) are routed into the log.
    """
    loglevel_name = os.getenv("LOGLEVEL", "").strip().upper()
    if loglevel_name in LOGLEVEL_NAMES:
        loglevel = getattr(logging, loglevel_name)

    # CRITICAL=FATAL=50 is the maximum, NOTSET=0 the minimum.
    loglevel = min(logging.FATAL, max(loglevel, logging.NOTSET))

    logging.basicConfig(level=loglevel, format=CONSOLE_FORMAT)
    logging.captureWarnings(True)

    if logfile is not None:
        fh = logging.handlers.RotatingFileHandler(
            logfile, maxBytes=100000, backupCount=5
        )
        fh.setLevel(loglevel)
        fh.setFormatter(
            logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(fh)
