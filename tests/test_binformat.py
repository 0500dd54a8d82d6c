import struct

import pytest

from xscene.binformat import BinaryReader, struct_read
from xscene.errors import TruncatedInput


def test_struct_read() -> None:
    data = struct.pack('<HI', 2, 42)
    assert struct_read('<HI', data) == (2, 42)
    assert struct_read(struct.Struct('<I'), data, 2) == (42, )
    with pytest.raises(TruncatedInput):
        struct_read('<I', data, 4)
    with pytest.raises(TruncatedInput):
        struct_read('<H', data, -1)


def test_reader() -> None:
    """Values are read in sequence."""
    data = struct.pack('<HI3f', 7, 5, 1.0, 2.0, 3.0) + struct.pack('<I', 4) + b'Mesh'
    reader = BinaryReader(data)
    assert reader.read_u16() == 7
    assert reader.read_u32() == 5
    assert reader.read_array('f', 3) == [1.0, 2.0, 3.0]
    assert reader.read_array('f', 0) == []
    assert reader.read_lenstr() == 'Mesh'
    assert reader.at_end()
    assert reader.remaining == 0


def test_big_endian() -> None:
    reader = BinaryReader(b'\x00\x01\x00\x00\x00\x02', big_endian=True)
    assert reader.read_u16() == 1
    assert reader.read_u32() == 2


def test_truncated() -> None:
    """Reading past the end raises, without moving the position."""
    reader = BinaryReader(b'\x01\x00\x00')
    with pytest.raises(TruncatedInput):
        reader.read_u32()
    assert reader.pos == 0
    assert reader.read_u16() == 1
    assert not reader.can_read(2)
    with pytest.raises(TruncatedInput):
        reader.read_bytes(2)
    with pytest.raises(TruncatedInput):
        reader.read_array('I', 1)
    assert reader.read_bytes(1) == b'\x00'


def test_seek() -> None:
    reader = BinaryReader(b'abcd')
    reader.seek(2)
    assert reader.read_bytes(2) == b'cd'
    assert repr(reader) == '<BinaryReader at 4/4>'
    with pytest.raises(TruncatedInput):
        reader.seek(5)
    with pytest.raises(TruncatedInput):
        BinaryReader(struct.pack('<I', 10) + b'short').read_lenstr()


@pytest.mark.parametrize('big_endian, order', [(False, '<'), (True, '>')])
def test_primitives(big_endian: bool, order: str) -> None:
    """Each primitive is read in the chosen byte order."""
    data = struct.pack(order + 'BiHfd', 200, -5, 513, 0.5, -2.25) + b'name\0rest'
    reader = BinaryReader(data, big_endian=big_endian)
    assert reader.read_u8() == 200
    assert reader.read_i32() == -5
    assert reader.read_u16() == 513
    assert reader.read_f32() == 0.5
    assert reader.read_f64() == -2.25
    assert reader.read_nullstr() == 'name'
    assert reader.read_bytes(4) == b'rest'
    assert reader.at_end()
    with pytest.raises(TruncatedInput):
        reader.read_u8()


def test_nullstr() -> None:
    reader = BinaryReader(b'\0caf\xe9\0abc')
    assert reader.read_nullstr() == ''
    assert reader.read_nullstr('latin-1') == 'caf\xe9'
    # No terminator.
    with pytest.raises(TruncatedInput):
        reader.read_nullstr()
    assert reader.pos == 6
    with pytest.raises(TruncatedInput):
        BinaryReader(b'\x01\x02\x03').read_i32()
    with pytest.raises(TruncatedInput):
        BinaryReader(bytes(7)).read_f64()
