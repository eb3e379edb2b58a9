"""
Logging configuration for the automation core.

Every component logs through the standard library with one shared line
format. Chatty third-party loggers (the MQTT client and urllib3 behind
``requests``) are held at WARNING unless the core itself runs at DEBUG.
"""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_NOISY_LOGGERS = ("paho", "urllib3")


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    """Turn ``"debug"``, ``"INFO"`` or a numeric level into a logging level."""
    if level is None:
        return default
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configure the root logger.

    Parameters
    ----------
    level: int or str
        Level for the core's loggers; names are case insensitive.
    log_file: Optional[str]
        When given, log lines are also appended to this file. Missing
        parent directories are created.
    """
    numeric = resolve_level(level)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=numeric, format=LOG_FORMAT, handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(numeric if numeric <= logging.DEBUG else logging.WARNING)
