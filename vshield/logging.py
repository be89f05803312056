"""Logging helpers.

Modules log through plain ``logging.getLogger(__name__)`` loggers, which all
live under the ``vshield`` namespace. Components that emit structured records
(reconciliation summaries, integrity reports) wrap their logger in
`PprintLogger`, which renders dicts with pprint and pydantic models as JSON.
"""

import logging
from pprint import pformat
from typing import Any

from pydantic import BaseModel

ROOT_LOGGER_NAME = "vshield"
LOG_FORMAT = "%(asctime)s - %(name)s:%(lineno)d - %(levelname)s - %(message)s"


class PprintLogger:
    """A logger wrapper that adds pprint support to standard logging methods."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _format_message(self, msg: Any, pprint: bool = True) -> str:
        """Format a message, optionally using pprint.

        Pydantic models are dumped as indented JSON so that domain records
        show every field; other objects go through pformat.
        """
        if not pprint or isinstance(msg, str):
            return str(msg)
        if isinstance(msg, BaseModel):
            return msg.model_dump_json(indent=2)
        return pformat(msg, width=120, depth=None)

    def debug(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.debug(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def info(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.info(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def warning(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.warning(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def error(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.error(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def exception(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.exception(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    # Delegate other standard logger methods/attributes
    def __getattr__(self, name: str) -> Any:
        return getattr(self._logger, name)


def setup_logging(name: str = ROOT_LOGGER_NAME, level: int | None = None) -> PprintLogger:
    """Return a PprintLogger for `name`, optionally setting its level."""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return PprintLogger(logger)


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach a stream handler to the package root logger.

    Safe to call more than once; the handler is only added the first time.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    for handler in root.handlers:
        handler.setLevel(level)
    return root
