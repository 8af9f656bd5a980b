"""Console, run-file and optional HTTP exchange logging."""
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
REQUEST_LOG_VARIABLE = "ERRIMPACT_REQUEST_LOG"
REQUEST_LOGGER = "errimpact.requests"


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = Path(".logs"),
                  name: str = "errimpact") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / f"{datetime.now():%Y%m%d-%H%M%S}.log"
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    request_log = setup_request_log()
    if request_log is None:
        logger.debug("request log not activated")
    else:
        logger.debug("request log activated at %s", request_log.handlers[0].baseFilename)

    return logger


def setup_request_log(environ: Optional[Mapping[str, str]] = None) -> Optional[logging.Logger]:
    """Open the HTTP exchange log named by ``ERRIMPACT_REQUEST_LOG``, if set.

    The file is truncated once per process. Exchanges are not propagated to the
    run log.
    """
    environ = os.environ if environ is None else environ
    path = environ.get(REQUEST_LOG_VARIABLE)
    if not path:
        return None
    logger = logging.getLogger(REQUEST_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    if not logger.handlers:
        handler = logging.FileHandler(Path(path).resolve(), mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    return logger


def active_request_log() -> Optional[logging.Logger]:
    logger = logging.getLogger(REQUEST_LOGGER)
    return logger if logger.handlers else None
