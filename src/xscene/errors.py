"""Exceptions raised while loading scenes, and the diagnostics collector.

Every failure has a kind in :py:class:`ErrorKind`. Parsers raise the matching
:py:class:`XFileError` subclass, then record it in the :py:class:`Diagnostics` for the document
before deciding whether to continue.
"""
from __future__ import annotations
from typing import ClassVar, Iterator, List, Optional
from enum import Enum

import attrs

from xscene.logger import get_logger


__all__ = [
    'ErrorKind', 'format_exc_lineinfo',
    'XFileError', 'FormatUnknown', 'HeaderInvalid', 'DecompressionFailed', 'XSyntaxError',
    'SemanticError', 'TimingOutOfRange', 'TimingLargeDelta', 'Unsupported', 'TruncatedInput',
    'Diagnostic', 'Diagnostics',
]
LOGGER = get_logger(__name__)


class ErrorKind(Enum):
    """The category of a diagnostic."""
    FORMAT_UNKNOWN = 'FormatUnknown'
    HEADER_INVALID = 'HeaderInvalid'
    DECOMPRESSION_FAILED = 'DecompressionFailed'
    SYNTAX = 'SyntaxError'
    SEMANTIC = 'SemanticError'
    TIMING_OUT_OF_RANGE = 'TimingOutOfRange'
    TIMING_LARGE_DELTA = 'TimingLargeDelta'
    UNSUPPORTED = 'Unsupported'
    TRUNCATED = 'TruncatedInput'
    #: Conditions which are only informational.
    NOTICE = 'Notice'


def format_exc_lineinfo(msg: str, filename: Optional[str], line_num: Optional[int]) -> str:
    """If a line number or file is provided, include those in the error message."""
    if line_num is not None:
        if filename is not None:
            return f'{msg}\nError occurred on line {line_num}, with file "{filename}".'
        return f'{msg}\nError occurred on line {line_num}.'
    elif filename is not None:
        return f'{msg}\nError occurred with file "{filename}".'
    return msg


class XFileError(Exception):
    """Base class for all errors produced while loading a scene.

    The string representation includes the line number and file if present.
    """
    kind: ClassVar[ErrorKind] = ErrorKind.SYNTAX
    mess: str
    """The error message that occurred."""
    line_num: Optional[int]
    """The line where the error occurred, or ``None`` if not applicable."""
    filename: Optional[str]

    def __init__(self, message: str, line: Optional[int] = None, filename: Optional[str] = None) -> None:
        super().__init__(message)
        self.mess = message
        self.line_num = line
        self.filename = filename

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.mess!r}, {self.line_num!r})'

    def __str__(self) -> str:
        return format_exc_lineinfo(self.mess, self.filename, self.line_num)


class FormatUnknown(XFileError):
    """The data is not a DirectX file, nor a known compressed container."""
    kind = ErrorKind.FORMAT_UNKNOWN


class HeaderInvalid(XFileError):
    """The 16-byte preamble does not conform."""
    kind = ErrorKind.HEADER_INVALID


class DecompressionFailed(XFileError):
    """No decompression strategy produced a valid payload."""
    kind = ErrorKind.DECOMPRESSION_FAILED


class XSyntaxError(XFileError):
    """The grammar was violated inside an object."""
    kind = ErrorKind.SYNTAX


class SemanticError(XFileError):
    """The model is structurally inconsistent (dangling index, bad weights...)."""
    kind = ErrorKind.SEMANTIC


class TimingOutOfRange(XFileError):
    """A corrected clip duration is not a plausible animation length."""
    kind = ErrorKind.TIMING_OUT_OF_RANGE


class TimingLargeDelta(XFileError):
    """Timing correction changed a clip's length in seconds too much."""
    kind = ErrorKind.TIMING_LARGE_DELTA


class Unsupported(XFileError):
    """The parser recognised data, but cannot populate the model with it."""
    kind = ErrorKind.UNSUPPORTED


class TruncatedInput(XFileError):
    """A binary read ran past the end of the buffer."""
    kind = ErrorKind.TRUNCATED


@attrs.frozen
class Diagnostic:
    """A single error or warning."""
    kind: ErrorKind
    message: str
    line: Optional[int] = None

    def __str__(self) -> str:
        if self.line is not None:
            return f'Line {self.line}: {self.message}'
        return self.message


@attrs.define
class Diagnostics:
    """Collects the errors and warnings produced while loading a single document.

    Errors are conditions which were fatal to at least one object. Warnings never affect the
    parse. ``success`` is set by the parser once it reaches the end without aborting.
    """
    errors: List[Diagnostic] = attrs.Factory(list)
    warnings: List[Diagnostic] = attrs.Factory(list)
    success: bool = False

    def error(self, kind: ErrorKind, message: str, line: Optional[int] = None) -> Diagnostic:
        """Record an error."""
        diag = Diagnostic(kind, message, line)
        self.errors.append(diag)
        LOGGER.error('{}', diag)
        return diag

    def warning(self, kind: ErrorKind, message: str, line: Optional[int] = None) -> Diagnostic:
        """Record a warning."""
        diag = Diagnostic(kind, message, line)
        self.warnings.append(diag)
        LOGGER.warning('{}', diag)
        return diag

    def record(self, exc: XFileError, fatal: bool = True) -> Diagnostic:
        """Record an exception, as either an error or warning."""
        if fatal:
            return self.error(exc.kind, exc.mess, exc.line_num)
        else:
            return self.warning(exc.kind, exc.mess, exc.line_num)

    def messages(self) -> List[str]:
        """Return the errors, then warnings as strings."""
        return [str(diag) for diag in self.errors] + [str(diag) for diag in self.warnings]

    def of_kind(self, kind: ErrorKind) -> Iterator[Diagnostic]:
        """Iterate over the errors and warnings with this kind."""
        for diag in self.errors:
            if diag.kind is kind:
                yield diag
        for diag in self.warnings:
            if diag.kind is kind:
                yield diag

    def __bool__(self) -> bool:
        """Diagnostics are truthy if anything was recorded."""
        return bool(self.errors or self.warnings)
