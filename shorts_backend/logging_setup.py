import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, MutableMapping, Optional, Tuple

LOGGER_NAME = "shorts_backend"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Console logging plus an optional rotating file under ``log_file``."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates on reload
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.info("Logging initialized. Log file: %s", path)

    return logger


class ContextAdapter(logging.LoggerAdapter):
    """
    Appends the bound context (download id, job id, video ref, ...) to every
    message, merging any per-call ``extra`` on top of it.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        context = dict(self.extra or {})
        context.update(kwargs.pop("extra", None) or {})
        if context:
            rendered = " ".join(f"{key}={value}" for key, value in context.items())
            msg = f"{msg} [{rendered}]"
        return msg, kwargs


def bind(logger: Optional[logging.Logger], name: str, **context: Any) -> ContextAdapter:
    """Wrap an injected logger (or the module logger ``name``) with context."""
    base = logger if logger is not None else logging.getLogger(name)
    if isinstance(base, logging.LoggerAdapter):
        base = base.logger
    return ContextAdapter(base, context)
