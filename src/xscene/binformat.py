"""
The binformat module :mod:`binformat` contains functionality for reading binary formats, \
esentially expanding on :external:mod:`struct`'s functionality.

Reads past the end of the buffer raise :py:class:`~xscene.errors.TruncatedInput`, parsers catch
this at object boundaries and record it in the diagnostics.
"""
from typing import Any, List, Tuple, Union
from struct import Struct
import functools

from xscene.errors import TruncatedInput


__all__ = ['struct_read', 'BinaryReader']

_cached_struct = functools.lru_cache()(Struct)


def struct_read(fmt: Union[Struct, str], data: bytes, offset: int = 0) -> Tuple[Any, ...]:
    """Unpack a structure from the buffer, raising TruncatedInput if there is not enough data."""
    if not isinstance(fmt, Struct):
        fmt = _cached_struct(fmt)
    if offset < 0 or offset + fmt.size > len(data):
        raise TruncatedInput(
            f'Needed {fmt.size} bytes at offset {offset}, '
            f'but only {max(0, len(data) - offset)} remain!'
        )
    return fmt.unpack_from(data, offset)


class BinaryReader:
    """Reads primitive values sequentially from a byte buffer.

    The byte order is little-endian unless ``big_endian`` is set.
    """
    data: bytes
    pos: int
    big_endian: bool

    def __init__(self, data: bytes, pos: int = 0, big_endian: bool = False) -> None:
        self.data = bytes(data)
        self.pos = pos
        self.big_endian = big_endian

    def __repr__(self) -> str:
        return f'<BinaryReader at {self.pos}/{len(self.data)}>'

    @property
    def remaining(self) -> int:
        """The number of bytes left to read."""
        return max(0, len(self.data) - self.pos)

    def at_end(self) -> bool:
        """Check if all the data has been read."""
        return self.pos >= len(self.data)

    def can_read(self, size: int) -> bool:
        """Check if this many bytes are available."""
        return self.pos + size <= len(self.data)

    def seek(self, pos: int) -> None:
        """Move to an absolute position."""
        if not 0 <= pos <= len(self.data):
            raise TruncatedInput(f'Cannot seek to {pos}, buffer is {len(self.data)} bytes.')
        self.pos = pos

    def _read(self, fmt: str) -> Any:
        prefix = '>' if self.big_endian else '<'
        st = _cached_struct(prefix + fmt)
        [value] = struct_read(st, self.data, self.pos)
        self.pos += st.size
        return value

    def read_u8(self) -> int:
        return self._read('B')

    def read_u16(self) -> int:
        return self._read('H')

    def read_u32(self) -> int:
        return self._read('I')

    def read_i32(self) -> int:
        return self._read('i')

    def read_f32(self) -> float:
        return self._read('f')

    def read_f64(self) -> float:
        return self._read('d')

    def read_bytes(self, size: int) -> bytes:
        """Read a fixed number of bytes."""
        if size < 0 or not self.can_read(size):
            raise TruncatedInput(
                f'Needed {size} bytes at offset {self.pos}, but only {self.remaining} remain!'
            )
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def read_array(self, fmt: str, count: int) -> List[Any]:
        """Read ``count`` consecutive values of the same type."""
        if count <= 0:
            return []
        prefix = '>' if self.big_endian else '<'
        st = _cached_struct(f'{prefix}{count}{fmt}')
        values = list(struct_read(st, self.data, self.pos))
        self.pos += st.size
        return values

    def read_lenstr(self, encoding: str = 'ascii') -> str:
        """Read a string, prefixed by its length as a DWORD."""
        size = self.read_u32()
        return self.read_bytes(size).decode(encoding)

    def read_nullstr(self, encoding: str = 'ascii') -> str:
        """Read a null-terminated string, consuming the terminator."""
        end = self.data.find(b'\0', self.pos)
        if end == -1:
            raise TruncatedInput(f'Fell off end of file reading string at offset {self.pos}!')
        text = self.data[self.pos:end]
        self.pos = end + 1
        return text.decode(encoding)
