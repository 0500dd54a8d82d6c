"""The entry point for loading DirectX files.

:py:func:`load` sniffs the format, decompresses if required, dispatches to the matching parser
and finally corrects the animation timing.
"""
from __future__ import annotations
from typing import Dict, Optional, Type, Union
import os

import attrs

from xscene import decompress as _decompress
from xscene.binary import BinaryParser
from xscene.errors import DecompressionFailed, ErrorKind, FormatUnknown
from xscene.logger import context, get_logger
from xscene.model import FileFormat, Header, SceneDocument
from xscene.parser import ParseOptions, SceneParser
from xscene.sniffer import FLOAT_SIZES, MAGIC, build_header, detect_format
from xscene.text import TextParser
from xscene.timing import TimingCorrector


__all__ = ['parser_for', 'load', 'load_file', 'correct_timing', 'unwrap_payload']
LOGGER = get_logger(__name__)

PARSERS: Dict[FileFormat, Type[SceneParser]] = {
    FileFormat.TEXT: TextParser,
    FileFormat.BINARY: BinaryParser,
}


def parser_for(fmt: FileFormat, options: Optional[ParseOptions] = None) -> SceneParser:
    """Create the parser for an uncompressed format.

    :raises FormatUnknown: If the format cannot be parsed directly.
    """
    try:
        parser_cls = PARSERS[fmt]
    except KeyError:
        raise FormatUnknown(f'No parser for {fmt.name.lower()} data') from None
    return parser_cls(options)


def unwrap_payload(data: bytes, payload: bytes) -> bytes:
    """Give a decompressed payload a header, if it lacks one.

    The format comes from the original header's tag. ``bzip`` is compressed binary, anything
    else is treated as text. The version and float size are kept from the original header.
    """
    if payload.startswith(MAGIC):
        return payload
    template = Header()
    if data.startswith(MAGIC):
        version = data[4:8]
        if version.isdigit():
            template.major_version = int(version[:2])
            template.minor_version = int(version[2:])
        template.float_size = FLOAT_SIZES.get(data[12:16], template.float_size)
    fmt = FileFormat.BINARY if data[8:12] == b'bzip' else FileFormat.TEXT
    return build_header(fmt, template) + payload


def _failed(options: ParseOptions, exc: Union[FormatUnknown, DecompressionFailed]) -> SceneDocument:
    document = SceneDocument()
    exc.filename = options.filename
    document.diagnostics.record(exc)
    return document


def load(data: bytes, options: Optional[ParseOptions] = None) -> SceneDocument:
    """Load a document from the contents of a file.

    This does not raise for bad data. If the document could not be read,
    :py:attr:`~xscene.model.SceneDocument.success` is false and the diagnostics say why.
    """
    if options is None:
        options = ParseOptions()
    result: Optional[_decompress.DecompressionResult] = None
    fmt = detect_format(data)
    LOGGER.debug('Detected format: {}', fmt.name)
    if fmt is FileFormat.UNKNOWN:
        return _failed(options, FormatUnknown('Data is not a DirectX file'))
    if fmt is FileFormat.COMPRESSED:
        try:
            result = _decompress.decompress(data)
        except DecompressionFailed as exc:
            return _failed(options, exc)
        data = unwrap_payload(data, result.data)
        fmt = detect_format(data)
        if fmt is FileFormat.COMPRESSED or fmt is FileFormat.UNKNOWN:
            return _failed(options, FormatUnknown('Decompressed data is not a DirectX file'))

    document = parser_for(fmt, options).parse(data)
    if result is not None:
        document.diagnostics.warning(
            ErrorKind.NOTICE,
            f'Decompressed with {result.strategy} at offset {result.offset}',
        )
    if document.success and options.correct_timing and document.animations:
        correct_timing(document)
    return document


def correct_timing(document: SceneDocument, corrector: Optional[TimingCorrector] = None) -> None:
    """Run the timing corrector over every clip, adding a warning for each failure."""
    if corrector is None:
        corrector = TimingCorrector()
    report = corrector.correct_all(document.animations)
    for result in report.results:
        for kind in result.errors:
            document.diagnostics.warning(kind, f"Animation '{result.clip_name}': {result.error_description}")
        if not result.errors and result.time_scale != 1.0:
            document.diagnostics.warning(
                ErrorKind.NOTICE,
                f"Animation '{result.clip_name}': rescaled from {result.original_ticks_per_second:g} "
                f'to {result.detected_ticks_per_second:g} ticks per second',
            )
    document.timing_report = report


def load_file(path: Union[str, os.PathLike[str]], options: Optional[ParseOptions] = None) -> SceneDocument:
    """Read and load a file from disk.

    :raises OSError: If the file cannot be read.
    """
    if options is None:
        options = ParseOptions()
    filename = os.fspath(path)
    if options.filename is None:
        options = attrs.evolve(options, filename=os.path.basename(filename))
    with context(options.filename or filename), open(filename, 'rb') as f:
        data = f.read()
        LOGGER.info('Loading {} ({} bytes)', filename, len(data))
        return load(data, options)
