import logging
import sys
import time
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "dust_sweeper"


def configure_logging(level: Union[int, str] = logging.INFO, log_file: Optional[Path] = None) -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(level)
    fmt = logging.Formatter(
        fmt="%(asctime)sZ %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in log.handlers[:]:
        log.removeHandler(handler)
    for h in handlers:
        h.setFormatter(fmt)
        log.addHandler(h)
    logging.Formatter.converter = time.gmtime  # UTC
    return log
