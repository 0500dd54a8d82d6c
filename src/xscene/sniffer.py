"""Classifies raw bytes, and parses the 16-byte ``xof`` preamble."""
from __future__ import annotations
from typing import Mapping, Optional
from typing_extensions import Final

from xscene.errors import Diagnostics, ErrorKind, HeaderInvalid
from xscene.logger import get_logger
from xscene.model import FileFormat, Header


__all__ = [
    'MAGIC', 'HEADER_SIZE', 'FORMAT_TAGS', 'FLOAT_SIZES', 'COMPRESSION_MAGICS',
    'detect_format', 'find_compression_magic', 'parse_header', 'build_header',
]
LOGGER = get_logger(__name__)

MAGIC: Final = b'xof '
HEADER_SIZE: Final = 16
FORMAT_TAGS: Final[Mapping[bytes, FileFormat]] = {
    b'txt ': FileFormat.TEXT,
    b'bin ': FileFormat.BINARY,
    b'tzip': FileFormat.COMPRESSED,
    b'bzip': FileFormat.COMPRESSED,
}
#: Float sizes which the parsers understand.
FLOAT_SIZES: Final[Mapping[bytes, int]] = {
    b'0032': 32,
    b'0064': 64,
}
#: Magic bytes for containers we can try to decompress, in the order they are checked.
COMPRESSION_MAGICS: Final[Mapping[bytes, str]] = {
    b'PK\x03\x04': 'zip',
    b'BZh': 'bzip2',
    b'\x1f\x8b': 'gzip',
    b'\xfd7zXZ\x00': 'xz',
    (0x00038760).to_bytes(4, 'little'): 'dxlz',
    (0x01038760).to_bytes(4, 'little'): 'dxlz',
    (0x02038760).to_bytes(4, 'little'): 'dxlz',
    b'\x78\x01': 'zlib',
    b'\x78\x5e': 'zlib',
    b'\x78\x9c': 'zlib',
    b'\x78\xda': 'zlib',
}


def find_compression_magic(data: bytes) -> Optional[str]:
    """If the data starts with a known compressed container's magic, return its name."""
    for magic, name in COMPRESSION_MAGICS.items():
        if data.startswith(magic):
            return name
    return None


def detect_format(data: bytes) -> FileFormat:
    """Classify the data as text, binary, compressed or unknown.

    This only examines the header, and never fails.
    """
    if data[:4] != MAGIC:
        if find_compression_magic(data) is not None:
            return FileFormat.COMPRESSED
        return FileFormat.UNKNOWN
    if len(data) < HEADER_SIZE:
        # Too short to have a format tag, so assume text.
        return FileFormat.TEXT
    tag = data[8:12]
    try:
        return FORMAT_TAGS[tag]
    except KeyError:
        pass
    if b'lz' in tag.lower():
        return FileFormat.COMPRESSED
    return FileFormat.TEXT


def parse_header(data: bytes, diagnostics: Optional[Diagnostics] = None) -> Header:
    """Validate the 16-byte preamble, and return the information inside.

    Unknown format tags and float sizes are warnings, added to the diagnostics if provided.

    :raises HeaderInvalid: If the magic or version is missing or malformed.
    """
    if len(data) < HEADER_SIZE:
        raise HeaderInvalid(f'File too small for header ({len(data)} < {HEADER_SIZE} bytes)')
    if data[:4] != MAGIC:
        raise HeaderInvalid(f'Invalid magic {data[:4]!r}, expected {MAGIC!r}')
    version = data[4:8]
    if not version.isdigit():
        raise HeaderInvalid(f'Invalid version {version!r}, expected 4 ASCII digits')

    header = Header(
        major_version=int(version[:2]),
        minor_version=int(version[2:]),
        format_tag=data[8:12].decode('latin-1'),
    )
    header.format = detect_format(data)
    if data[8:12] not in FORMAT_TAGS and header.format is not FileFormat.COMPRESSED:
        _warn(diagnostics, f'Unknown format tag {header.format_tag!r}, assuming text')

    float_tag = data[12:16]
    try:
        header.float_size = FLOAT_SIZES[float_tag]
    except KeyError:
        _warn(diagnostics, f'Unexpected float size {float_tag.decode("latin-1")!r}, assuming 32-bit')
        header.float_size = 32
    else:
        if header.float_size != 32:
            _warn(diagnostics, f'Float size is {header.float_size}-bit, expected 32-bit')

    LOGGER.debug(
        'Header: v{}.{}, format={}, {}-bit floats',
        header.major_version, header.minor_version, header.format.name, header.float_size,
    )
    return header


def build_header(fmt: FileFormat, template: Optional[Header] = None) -> bytes:
    """Produce a 16-byte preamble for the given format.

    This is used to re-wrap decompressed payloads which lack their own.
    """
    if template is None:
        template = Header()
    tag = b'bin ' if fmt is FileFormat.BINARY else b'txt '
    return b'%s%02d%02d%s%04d' % (
        MAGIC,
        template.major_version % 100, template.minor_version % 100,
        tag, template.float_size,
    )


def _warn(diagnostics: Optional[Diagnostics], message: str) -> None:
    if diagnostics is not None:
        diagnostics.warning(ErrorKind.HEADER_INVALID, message)
    else:
        LOGGER.warning(message)
