"""Best-effort recovery of compressed ``.x`` payloads.

There is no authoritative description of every compressed variant found in the wild, so this
tries an ordered registry of strategies. Each :py:class:`Strategy` is a decoder plus the offsets
and parameters to try it with, and every attempt's output passes through the single
:py:func:`is_valid_payload` check. The first attempt that validates wins, so the order of
:py:data:`STRATEGIES` is significant.
"""
from __future__ import annotations
from typing import Callable, Iterator, Sequence, Tuple
from typing_extensions import Final
from io import BytesIO
from zipfile import BadZipFile, ZipFile
import bz2
import gzip
import lzma
import struct
import zlib

import attrs

from xscene.errors import DecompressionFailed
from xscene.logger import get_logger
from xscene.sniffer import HEADER_SIZE, MAGIC


__all__ = [
    'Strategy', 'DecompressionResult', 'STRATEGIES',
    'is_valid_payload', 'decompress', 'iter_attempts',
    'decode_mszip', 'decode_lzss', 'decode_deflate', 'decode_pattern',
]
LOGGER = get_logger(__name__)

#: How far into the output the ``template`` keyword may be.
VALIDATE_WINDOW: Final = 100
MSZIP_SIGNATURE: Final = b'CK'
MSZIP_WINDOW: Final = 32768
# Headers seen in front of LZ-compressed files from some exporters.
DXLZ_SIGNATURES: Final = (
    (0x00038760).to_bytes(4, 'little'),
    (0x01038760).to_bytes(4, 'little'),
    (0x02038760).to_bytes(4, 'little'),
)
# Anything a decoder may raise for data that isn't in its format.
DECODE_ERRORS: Final = (
    zlib.error, OSError, EOFError, ValueError, lzma.LZMAError,
    BadZipFile, KeyError, IndexError, struct.error,
)

Decoder = Callable[[bytes, object], bytes]


def is_valid_payload(data: bytes) -> bool:
    """Check whether decompressed data looks like a DirectX file."""
    return data.startswith(MAGIC) or b'template' in data[:VALIDATE_WINDOW]


@attrs.frozen
class Strategy:
    """A decoder, along with the grid of offsets and parameters to try it with.

    If ``magic`` is set, offsets where the data does not start with one of those byte strings are
    skipped without calling the decoder.
    """
    name: str
    decode: Decoder
    offsets: Tuple[int, ...] = (0, )
    params: Tuple[object, ...] = (None, )
    magic: Tuple[bytes, ...] = ()
    #: Bytes after the offset to drop before decoding, such as a signature.
    skip: int = 0

    def attempts(self, data: bytes) -> Iterator[Tuple[int, object]]:
        """Yield the offset, parameter pairs which apply to this data, in order."""
        for offset in self.offsets:
            if offset >= len(data):
                continue
            if self.magic and not data.startswith(self.magic, offset):
                continue
            for param in self.params:
                yield offset, param


@attrs.frozen
class DecompressionResult:
    """The payload, along with the attempt which produced it."""
    data: bytes
    strategy: str
    offset: int
    param: object
    #: Index of the attempt in the overall search order.
    attempt: int


def _decode_zip(data: bytes, _: object) -> bytes:
    with ZipFile(BytesIO(data)) as zipfile:
        names = zipfile.namelist()
        if not names:
            raise ValueError('Empty zip archive')
        return zipfile.read(names[0])


def _decode_bz2(data: bytes, _: object) -> bytes:
    return bz2.decompress(data)


def _decode_gzip(data: bytes, _: object) -> bytes:
    return gzip.decompress(data)


def _decode_xz(data: bytes, _: object) -> bytes:
    return lzma.decompress(data)


def _decode_zlib(data: bytes, _: object) -> bytes:
    return zlib.decompress(data)


def decode_deflate(data: bytes, wbits: object) -> bytes:
    """Inflate with the specified window bits. Negative values are raw deflate streams."""
    if not isinstance(wbits, int):
        raise TypeError(f'Window bits must be an integer, not {wbits!r}')
    inflater = zlib.decompressobj(wbits)
    result = inflater.decompress(data)
    result += inflater.flush()
    if not inflater.eof and not result:
        raise zlib.error('Incomplete deflate stream')
    return result


def decode_mszip(data: bytes, _: object = None) -> bytes:
    """Decode the MSZIP container used for ``tzip``/``bzip`` files.

    This is a DWORD with the total size, then a series of blocks. Each block has the
    uncompressed and compressed sizes as WORDs, then the ``CK`` signature followed by a raw
    deflate stream. The compressed size includes the signature. Each block uses the previous
    output as the deflate dictionary.
    """
    [total_size] = struct.unpack_from('<I', data, 0)
    pos = 4
    out = bytearray()
    while pos + 6 <= len(data):
        uncomp_size, comp_size = struct.unpack_from('<HH', data, pos)
        pos += 4
        if data[pos:pos + 2] != MSZIP_SIGNATURE:
            raise ValueError(f'Missing MSZIP signature at {pos}')
        block_end = pos + comp_size
        if comp_size < 2 or block_end > len(data):
            raise ValueError(f'MSZIP block at {pos} overruns the data')
        block = data[pos + 2:block_end]
        pos = block_end

        if out:
            inflater = zlib.decompressobj(-zlib.MAX_WBITS, zdict=bytes(out[-MSZIP_WINDOW:]))
        else:
            inflater = zlib.decompressobj(-zlib.MAX_WBITS)
        chunk = inflater.decompress(block) + inflater.flush()
        if uncomp_size and len(chunk) != uncomp_size:
            LOGGER.debug('MSZIP block expected {} bytes, got {}', uncomp_size, len(chunk))
        out += chunk
    if not out:
        raise ValueError('No MSZIP blocks found')
    # The total sometimes includes the 16-byte header.
    if len(out) not in (total_size, total_size - HEADER_SIZE):
        LOGGER.debug('MSZIP total size was {}, decoded {} bytes', total_size, len(out))
    return bytes(out)


def decode_lzss(data: bytes, _: object = None) -> bytes:
    """A minimal LZSS decoder.

    Each flag byte controls the next 8 items, least significant bit first. A set bit is a
    literal byte, a clear bit is a little-endian WORD where the high 12 bits are the distance
    minus 1, and the low 4 bits are the length minus 3. References before the start of the
    output are skipped.
    """
    out = bytearray()
    pos = 0
    size = len(data)
    while pos < size:
        flags = data[pos]
        pos += 1
        for bit in range(8):
            if pos >= size:
                break
            if flags & (1 << bit):
                out.append(data[pos])
                pos += 1
            else:
                if pos + 2 > size:
                    pos = size
                    break
                [ref] = struct.unpack_from('<H', data, pos)
                pos += 2
                distance = (ref >> 4) + 1
                length = (ref & 0xF) + 3
                if distance > len(out):
                    continue
                start = len(out) - distance
                # Byte by byte, the reference may overlap what it produces.
                for i in range(length):
                    out.append(out[start + i])
    if not out:
        raise ValueError('LZSS produced no output')
    return bytes(out)


def decode_pattern(data: bytes, _: object = None) -> bytes:
    """Search for an uncompressed payload embedded in the data."""
    for needle in (MAGIC, b'template'):
        pos = data.find(needle)
        if pos != -1:
            return data[pos:]
    raise ValueError('No embedded payload found')


_HEADER_OFFSETS: Final = (0, 4, 8, 12, 16, 20, 24, 28, 32, 40, 48)

STRATEGIES: Final[Sequence[Strategy]] = (
    Strategy('zip', _decode_zip, _HEADER_OFFSETS, magic=(b'PK\x03\x04', )),
    Strategy('bzip2', _decode_bz2, _HEADER_OFFSETS, magic=(b'BZh', )),
    Strategy('gzip', _decode_gzip, _HEADER_OFFSETS, magic=(b'\x1f\x8b', )),
    Strategy('xz', _decode_xz, _HEADER_OFFSETS, magic=(b'\xfd7zXZ\x00', )),
    Strategy('zlib', _decode_zlib, _HEADER_OFFSETS, magic=(b'\x78\x01', b'\x78\x5e', b'\x78\x9c', b'\x78\xda')),
    Strategy('mszip', decode_mszip, (0, )),
    Strategy(
        'deflate', decode_deflate,
        offsets=(0, 1, 2, 3, 4, 8, 12, 16),
        params=(-15, -14, -13, -12, -11, -10, -9, -8, 15, 14, 13, 12, 11, 10, 9, 8),
    ),
    Strategy('dxlz', decode_lzss, (0, ), magic=DXLZ_SIGNATURES, skip=4),
    Strategy('lzss', decode_lzss, (0, 4, 8, 12, 16, 20, 24, 28, 32)),
    Strategy('pattern', decode_pattern, (0, )),
)


def _strip_header(data: bytes) -> bytes:
    """Remove the preamble of a compressed ``xof`` file, leaving the compressed body."""
    if data.startswith(MAGIC) and len(data) >= HEADER_SIZE:
        return data[HEADER_SIZE:]
    return data


def iter_attempts(
    data: bytes,
    strategies: Sequence[Strategy] = STRATEGIES,
) -> Iterator[Tuple[Strategy, int, object]]:
    """Yield every strategy, offset, parameter combination which will be tried, in order."""
    for strategy in strategies:
        for offset, param in strategy.attempts(data):
            yield strategy, offset, param


def decompress(data: bytes, strategies: Sequence[Strategy] = STRATEGIES) -> DecompressionResult:
    """Decompress the data, by trying each strategy in turn.

    If the data starts with the ``xof`` preamble, that is removed first.

    :raises DecompressionFailed: If no strategy produces a valid payload.
    """
    body = _strip_header(data)
    if not body:
        raise DecompressionFailed('No compressed data after the header')

    attempt_count = 0
    for attempt_count, (strategy, offset, param) in enumerate(iter_attempts(body, strategies)):
        chunk = body[offset + strategy.skip:]
        try:
            result = strategy.decode(chunk, param)
        except DECODE_ERRORS as exc:
            LOGGER.debug('{} @ {} ({}): {}', strategy.name, offset, param, exc)
            continue
        if result and is_valid_payload(result):
            LOGGER.info(
                'Decompressed {} -> {} bytes via {} @ {} ({})',
                len(body), len(result), strategy.name, offset, param,
            )
            return DecompressionResult(result, strategy.name, offset, param, attempt_count)
        LOGGER.debug('{} @ {} ({}): output failed validation', strategy.name, offset, param)

    raise DecompressionFailed(
        f'All decompression strategies failed ({attempt_count + 1} attempts '
        f'over {len(body)} bytes)'
    )

