import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Chatty third-party loggers that flood the DE logs at INFO
_NOISY_LOGGERS = ("numba", "matplotlib", "fontTools", "h5py", "anndata")


def init_logging(
    logfile: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
) -> None:
    """
    Route jointde logging to stderr and, if given, to ``logfile``.

    Previously installed root handlers are dropped, so repeated CLI
    invocations in one process do not duplicate output.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level!r}")

    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
        h.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
