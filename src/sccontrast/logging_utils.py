import logging
from pathlib import Path
from typing import Optional

# Third-party loggers that flood INFO with per-gene fitting chatter
_NOISY_LOGGERS = ("pydeseq2", "numba", "h5py", "anndata")


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.
    """

    # Remove any pre-configured handlers (important for Typer)
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
