import logging
from pprint import pformat
from typing import Any

from pydantic import BaseModel

LOG_FORMAT = "%(asctime)s - %(pathname)s:%(lineno)d - %(levelname)s - %(message)s"


class PprintLogger:
    """A logger wrapper that pretty-prints models and carries bound context.

    Context bound with :meth:`bind` (batch id, entity key, ...) is prefixed
    to every message so that surfaced failures can be reprocessed.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context: dict[str, Any] = dict(context or {})

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def bind(self, **context: Any) -> "PprintLogger":
        """Return a logger sharing the same target with extra context."""
        return PprintLogger(self._logger, {**self._context, **context})

    def _format_message(self, msg: Any, pprint: bool = True) -> str:
        """Format a message, prefixed with the bound context.

        Pydantic models are rendered with model_dump_json(); other complex
        objects with pformat when pprint=True.
        """
        if not pprint or isinstance(msg, str):
            text = str(msg)
        elif isinstance(msg, BaseModel):
            text = msg.model_dump_json(indent=2)
        else:
            text = pformat(msg, width=120, depth=None)
        if self._context:
            prefix = " ".join(f"{key}={value}" for key, value in self._context.items())
            return f"[{prefix}] {text}"
        return text

    def _log(self, level: int, msg: Any, args: tuple, pprint: bool, kwargs: dict) -> None:
        if not self._logger.isEnabledFor(level):
            return
        # stacklevel=3 points at the caller of debug()/info()/...
        self._logger.log(level, self._format_message(msg, pprint=pprint), *args, stacklevel=3, **kwargs)

    def debug(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._log(logging.DEBUG, msg, args, pprint, kwargs)

    def info(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._log(logging.INFO, msg, args, pprint, kwargs)

    def warning(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._log(logging.WARNING, msg, args, pprint, kwargs)

    def error(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._log(logging.ERROR, msg, args, pprint, kwargs)

    def exception(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, args, pprint, kwargs)

    # Delegate other standard logger methods/attributes
    def __getattr__(self, name: str) -> Any:
        return getattr(self._logger, name)


def setup_logging(name: str = "foodgraph", level: int | None = None) -> PprintLogger:
    """Return a PprintLogger for ``name``, attaching a stream handler once.

    The handler goes on the top-level ``foodgraph`` logger so module loggers
    propagate to it. ``level`` is applied to the named logger when given.
    """
    root = logging.getLogger("foodgraph")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return PprintLogger(logger)
