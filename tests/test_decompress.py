"""Test the decompression strategies."""
from io import BytesIO
from zipfile import ZipFile
import bz2
import gzip
import lzma
import struct
import zlib

import pytest

from xscene import decompress
from xscene.decompress import (
    STRATEGIES, DecompressionResult, decode_lzss, decode_mszip, is_valid_payload,
)
from xscene.errors import DecompressionFailed


PAYLOAD = b'''\
template Vector {
 <3D82AB5E-62DA-11cf-AB39-0020AF71E433>
 FLOAT x;
 FLOAT y;
 FLOAT z;
}

Mesh {
 3;
 0.0; 0.0; 0.0;,
 1.0; 0.0; 0.0;,
 0.0; 1.0; 0.0;;
 1;
 3; 0, 1, 2;;
}
'''
COMPRESSED_HEADER = b'xof 0303tzip0032'


def raw_deflate(data: bytes, zdict: bytes = b'') -> bytes:
    if zdict:
        comp = zlib.compressobj(9, zlib.DEFLATED, -15, zdict=zdict)
    else:
        comp = zlib.compressobj(9, zlib.DEFLATED, -15)
    return comp.compress(data) + comp.flush()


def build_mszip(data: bytes, block_size: int) -> bytes:
    """Produce an MSZIP container, using the previous block as the dictionary."""
    out = struct.pack('<I', len(data) + 16)
    prev = b''
    for start in range(0, len(data), block_size):
        block = data[start:start + block_size]
        comp = raw_deflate(block, prev)
        out += struct.pack('<HH', len(block), len(comp) + 2) + b'CK' + comp
        prev = block
    return out


def build_zip(data: bytes) -> bytes:
    buf = BytesIO()
    with ZipFile(buf, 'w') as zipfile:
        zipfile.writestr('scene.x', data)
    return buf.getvalue()


@pytest.mark.parametrize('data, valid', [
    (b'xof 0303txt 0032', True),
    (b'\n\ntemplate Vector {', True),
    (b' ' * 95 + b'template', False),
    (b'Mesh {}', False),
    (b'', False),
])
def test_is_valid_payload(data: bytes, valid: bool) -> None:
    assert is_valid_payload(data) is valid


@pytest.mark.parametrize('strategy, data', [
    ('zip', build_zip(PAYLOAD)),
    ('bzip2', bz2.compress(PAYLOAD)),
    ('gzip', gzip.compress(PAYLOAD)),
    ('xz', lzma.compress(PAYLOAD)),
    ('zlib', zlib.compress(PAYLOAD)),
    ('deflate', raw_deflate(PAYLOAD)),
], ids=lambda val: val if isinstance(val, str) else '')
def test_containers(strategy: str, data: bytes) -> None:
    """Each container is recognised, with or without the preamble."""
    for prefix in [b'', COMPRESSED_HEADER]:
        result = decompress.decompress(prefix + data)
        assert result.data == PAYLOAD
        assert result.strategy == strategy
        assert result.offset == 0


def test_archive_offset() -> None:
    """Archives may be preceded by a small vendor header."""
    result = decompress.decompress(COMPRESSED_HEADER + b'\x01\x02\x03\x04' + zlib.compress(PAYLOAD))
    assert result == DecompressionResult(PAYLOAD, 'zlib', 4, None, result.attempt)


def test_deflate_window_bits() -> None:
    """The raw deflate search records the window size used."""
    result = decompress.decompress(raw_deflate(PAYLOAD))
    assert result.param == -15


def test_mszip() -> None:
    """MSZIP blocks chain their dictionaries."""
    payload = PAYLOAD * 4
    data = build_mszip(payload, 100)
    assert decode_mszip(data) == payload

    result = decompress.decompress(COMPRESSED_HEADER + data)
    assert result.strategy == 'mszip'
    assert result.data == payload


def test_mszip_invalid() -> None:
    with pytest.raises(ValueError):
        decode_mszip(struct.pack('<IHH', 20, 10, 10) + b'XX' + bytes(10))


def test_lzss() -> None:
    """Test literals and back references."""
    # 8 literals, then one reference to copy them again.
    distance, length = 8, 8
    ref = ((distance - 1) << 4) | (length - 3)
    data = b'\xff' + b'template' + b'\x00' + struct.pack('<H', ref)
    assert decode_lzss(data) == b'templatetemplate'

    result = decompress.decompress(data)
    assert result.strategy == 'lzss'
    assert result.data == b'templatetemplate'


def test_lzss_overlapping() -> None:
    """A reference may overlap the data it produces."""
    ref = ((1 - 1) << 4) | (5 - 3)
    assert decode_lzss(b'\x01a' + struct.pack('<H', ref)) == b'aaaaaa'


def test_dxlz_signature() -> None:
    """The DirectX LZ signature is skipped before decoding."""
    body = b'\xff' + b'template' + b'\xff' + b' Vector '
    data = (0x00038760).to_bytes(4, 'little') + body
    result = decompress.decompress(COMPRESSED_HEADER + data)
    assert result.strategy == 'dxlz'
    assert result.data == b'template Vector '


def test_pattern_search() -> None:
    """An uncompressed payload embedded in junk is found."""
    pattern = [strat for strat in STRATEGIES if strat.name == 'pattern']
    result = decompress.decompress(b'junk data here' + PAYLOAD, pattern)
    assert result.data == PAYLOAD
    assert result.strategy == 'pattern'


def test_failure() -> None:
    """If nothing produces a valid payload, this fails."""
    with pytest.raises(DecompressionFailed):
        decompress.decompress(COMPRESSED_HEADER + bytes(256))
    with pytest.raises(DecompressionFailed):
        decompress.decompress(COMPRESSED_HEADER)


def test_attempt_order() -> None:
    """Attempts are offset-major, then parameter order."""
    [deflate] = [strat for strat in STRATEGIES if strat.name == 'deflate']
    attempts = list(decompress.iter_attempts(bytes(64), [deflate]))
    assert attempts[0] == (deflate, 0, -15)
    assert attempts[1] == (deflate, 0, -14)
    assert attempts[16] == (deflate, 1, -15)
    assert len(attempts) == 8 * 16


def test_deflate_bad_parameter() -> None:
    """The window bits must be an integer, regardless of optimisation flags."""
    with pytest.raises(TypeError):
        decompress.decode_deflate(raw_deflate(PAYLOAD), None)
