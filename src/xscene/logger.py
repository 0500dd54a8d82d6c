"""Logging helpers used throughout the package.

Loggers from :py:func:`get_logger` accept :external:py:meth:`str.format` style arguments
(``LOGGER.info('Read {} meshes', count)``) instead of ``%`` formatting. Messages are only
formatted if a handler actually emits them.

:py:func:`context` tags every record logged inside it with the name of the file being loaded,
as the ``xscene_context`` attribute. Handlers and formatters are left to the application.
"""
from __future__ import annotations
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional, Tuple, cast
import contextlib
import contextvars
import logging


__all__ = ['LogMessage', 'LoggerAdapter', 'get_logger', 'context', 'current_context']
_CONTEXT: contextvars.ContextVar[Tuple[str, ...]] = contextvars.ContextVar('xscene_context', default=())
ROOT_NAME = 'xscene'


class LogMessage:
    """A message which is formatted with :external:py:meth:`str.format` when first converted."""
    __slots__ = ('fmt', 'args', 'kwargs', '_text')
    fmt: str
    args: Tuple[object, ...]
    kwargs: Dict[str, object]
    _text: Optional[str]

    def __init__(self, fmt: str, args: Tuple[object, ...] = (), kwargs: Optional[Dict[str, object]] = None) -> None:
        self.fmt = fmt
        self.args = args
        self.kwargs = kwargs or {}
        self._text = None

    def __str__(self) -> str:
        if self._text is None:
            # Messages without arguments may contain literal braces.
            if self.args or self.kwargs:
                self._text = self.fmt.format(*self.args, **self.kwargs)
            else:
                self._text = self.fmt
            # The arguments aren't needed again.
            self.args = ()
            self.kwargs = {}
        return self._text

    def __repr__(self) -> str:
        return f'LogMessage({self.fmt!r})'


if TYPE_CHECKING:
    _AdapterBase = logging.LoggerAdapter[logging.Logger]
else:
    _AdapterBase = logging.LoggerAdapter


class LoggerAdapter(_AdapterBase):
    """Wraps a logger, so messages are formatted with their arguments via str.format()."""

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def log(
        self,
        level: int,
        msg: object,
        *args: Any,
        exc_info: Any = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra: Optional[Mapping[str, object]] = None,
        **kwargs: Any,
    ) -> None:
        """Log a message, passing the positional and keyword arguments to :external:py:meth:`str.format`."""
        if not self.isEnabledFor(level):
            return
        record_extra = dict(extra or {})
        ctx = current_context()
        record_extra['xscene_context'] = f' ({ctx})' if ctx else ''
        self.logger.log(
            level,
            LogMessage(str(msg), args, kwargs),
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
            extra=record_extra,
        )


def get_logger(name: str = '') -> logging.Logger:
    """Get a logger in the ``xscene`` namespace.

    Passing ``__name__`` from inside the package gives the module's logger, other names are
    placed underneath ``xscene``.
    """
    if name == ROOT_NAME or not name:
        full_name = ROOT_NAME
    elif name.startswith(ROOT_NAME + '.'):
        full_name = name
    else:
        full_name = f'{ROOT_NAME}.{name}'
    return cast(logging.Logger, LoggerAdapter(logging.getLogger(full_name)))


def current_context() -> str:
    """Return the active context names, joined with commas."""
    return ', '.join(_CONTEXT.get())


@contextlib.contextmanager
def context(name: str) -> Iterator[str]:
    """Tag log messages produced inside this block with the given name.

    Contexts nest, the names are shown outermost first.
    """
    token = _CONTEXT.set(_CONTEXT.get() + (name, ))
    try:
        yield name
    finally:
        _CONTEXT.reset(token)
