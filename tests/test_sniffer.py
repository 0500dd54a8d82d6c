"""Test format detection and header parsing."""
import bz2
import gzip
import zlib

import pytest

from xscene.errors import Diagnostics, ErrorKind, HeaderInvalid
from xscene.model import FileFormat, Header
from xscene.sniffer import build_header, detect_format, find_compression_magic, parse_header


@pytest.mark.parametrize('data, fmt', [
    (b'xof 0303txt 0032\n', FileFormat.TEXT),
    (b'xof 0303bin 0032', FileFormat.BINARY),
    (b'xof 0303tzip0032', FileFormat.COMPRESSED),
    (b'xof 0303bzip0032', FileFormat.COMPRESSED),
    (b'xof 0302lzwb0032', FileFormat.COMPRESSED),
    (b'xof 0303abcd0032', FileFormat.TEXT),  # Unknown tags are treated as text.
    (b'xof 03', FileFormat.TEXT),  # Too short for a tag.
    (b'hello world', FileFormat.UNKNOWN),
    (b'', FileFormat.UNKNOWN),
])
def test_detect_format(data: bytes, fmt: FileFormat) -> None:
    assert detect_format(data) is fmt


@pytest.mark.parametrize('data, name', [
    (zlib.compress(b'template'), 'zlib'),
    (bz2.compress(b'template'), 'bzip2'),
    (gzip.compress(b'template'), 'gzip'),
    (b'PK\x03\x04rest', 'zip'),
    ((0x01038760).to_bytes(4, 'little') + b'rest', 'dxlz'),
    (b'xof 0303txt 0032', None),
])
def test_compression_magic(data: bytes, name: str) -> None:
    assert find_compression_magic(data) == name
    if name is not None:
        assert detect_format(data) is FileFormat.COMPRESSED


def test_parse_header() -> None:
    diag = Diagnostics()
    header = parse_header(b'xof 0302bin 0032', diag)
    assert header.format is FileFormat.BINARY
    assert header.format_tag == 'bin '
    assert header.version == (3, 2)
    assert header.float_size == 32
    assert not diag


def test_parse_header_version() -> None:
    """The version is two digits each for major and minor."""
    header = parse_header(b'xof 0303txt 0032')
    assert header.major_version == 3
    assert header.minor_version == 3
    assert parse_header(b'xof 1012txt 0032').version == (10, 12)


@pytest.mark.parametrize('data', [
    b'xof 0303txt',  # Too short.
    b'xoff0303txt 0032',  # Bad magic.
    b'xof 03.3txt 0032',  # Bad version.
])
def test_parse_header_invalid(data: bytes) -> None:
    with pytest.raises(HeaderInvalid):
        parse_header(data)


def test_header_warnings() -> None:
    """Unusual tags are warnings, not failures."""
    diag = Diagnostics()
    header = parse_header(b'xof 0303abcd0016', diag)
    assert header.format is FileFormat.TEXT
    assert header.float_size == 32
    assert [warn.kind for warn in diag.warnings] == [ErrorKind.HEADER_INVALID, ErrorKind.HEADER_INVALID]
    assert not diag.errors

    diag = Diagnostics()
    assert parse_header(b'xof 0303bin 0064', diag).float_size == 64
    assert len(diag.warnings) == 1


def test_build_header() -> None:
    assert build_header(FileFormat.TEXT) == b'xof 0303txt 0032'
    assert build_header(FileFormat.BINARY, Header(minor_version=2, float_size=64)) == b'xof 0302bin 0064'
    assert len(build_header(FileFormat.TEXT)) == 16
