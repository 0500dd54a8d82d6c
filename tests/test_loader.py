"""Test the complete loading pipeline."""
from pathlib import Path
import logging
import struct
import zlib

from dirty_equals import HasAttributes, IsStr
import pytest

from xscene import ParseOptions, load, load_file
from xscene.binary import BinaryParser, BinToken
from xscene.errors import ErrorKind, FormatUnknown
from xscene.loader import parser_for, unwrap_payload
from xscene.math import Vec3
from xscene.model import FileFormat
from xscene.text import TextParser


BODY = b'''
template Vector {
 <3D82AB5E-62DA-11cf-AB39-0020AF71E433>
 FLOAT x;
 FLOAT y;
 FLOAT z;
}
AnimTicksPerSecond { 4800; }
Mesh Tri {
 3;
 0.0; 0.0; 0.0;,
 1.0; 0.0; 0.0;,
 0.0; 1.0; 0.0;;
 1;
 3; 0, 1, 2;;
}
Frame Root {}
AnimationSet {
 Animation {
  { Root }
  AnimationKey { 2; 2; 0; 3; 0.0, 0.0, 0.0;;, 9600; 3; 1.0, 0.0, 0.0;;; }
 }
}
'''
TEXT = b'xof 0303txt 0032' + BODY


def test_parser_for() -> None:
    assert isinstance(parser_for(FileFormat.TEXT), TextParser)
    with pytest.raises(FormatUnknown):
        parser_for(FileFormat.COMPRESSED)


def test_load_text() -> None:
    doc = load(TEXT)
    assert doc.success
    assert doc.is_valid()
    assert doc.mesh == HasAttributes(name='Tri', face_count=1, bone_count=1)
    [clip] = doc.animations
    assert clip.duration_seconds == 2.0
    # The declared rate was plausible.
    assert doc.timing_report is not None
    [result] = doc.timing_report.results
    assert result == HasAttributes(is_valid=True, detected_ticks_per_second=4800.0, time_scale=1.0)


def test_timing_disabled() -> None:
    doc = load(TEXT, ParseOptions(correct_timing=False))
    assert doc.success
    assert doc.timing_report is None


def test_timing_correction(datadir: Path) -> None:
    """A clip exported without its rate is detected, and failures become warnings."""
    doc = load_file(datadir / 'walk.x')
    assert doc.success
    assert doc.header.has_timing_info is False
    [clip] = doc.animations
    assert clip.ticks_per_second == 160.0
    assert [bone.name for bone in doc.mesh.bones] == ['Leg']
    assert doc.mesh.bones[0].parent_index == -1

    [result] = doc.timing_report.results
    assert result.detected_ticks_per_second == 160.0
    assert result.original_ticks_per_second == 4800.0
    assert not result.is_valid
    [warning] = doc.diagnostics.of_kind(ErrorKind.TIMING_LARGE_DELTA)
    assert warning.message == IsStr(regex="Animation 'Animation_0': Timing correction failed validation.*")


def test_load_file_context(datadir: Path, caplog: pytest.LogCaptureFixture) -> None:
    """Logs while loading a file are tagged with its name."""
    caplog.set_level(logging.INFO, logger='xscene')
    load_file(datadir / 'walk.x')
    assert caplog.records
    assert all(record.xscene_context == ' (walk.x)' for record in caplog.records)  # type: ignore[attr-defined]


def test_load_file_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_file(tmp_path / 'missing.x')


def test_compressed_text() -> None:
    """A compressed payload without its own header is given one."""
    doc = load(b'xof 0303tzip0032' + zlib.compress(BODY.lstrip()))
    assert doc.success
    assert doc.header.format is FileFormat.TEXT
    assert doc.mesh.name == 'Tri'
    assert [diag.message for diag in doc.diagnostics.of_kind(ErrorKind.NOTICE)] == [
        'Decompressed with zlib at offset 0',
    ]


def test_compressed_with_header() -> None:
    """If the payload has a header, that is used."""
    doc = load(b'xof 0303tzip0032' + zlib.compress(TEXT))
    assert doc.success
    assert doc.mesh.name == 'Tri'


def test_compressed_binary() -> None:
    """Compressed binary files are decoded with the binary grammar."""
    body = (
        BinToken.NAME.to_bytes(2, 'little') + (4).to_bytes(4, 'little') + b'Mesh'
        + BinToken.OBRACE.to_bytes(2, 'little')
        + BinToken.INTEGER_LIST.to_bytes(2, 'little') + (1).to_bytes(4, 'little') + (0).to_bytes(4, 'little')
        + BinToken.INTEGER_LIST.to_bytes(2, 'little') + (1).to_bytes(4, 'little') + (0).to_bytes(4, 'little')
        + BinToken.CBRACE.to_bytes(2, 'little')
    )
    payload = unwrap_payload(b'xof 0303bzip0032', body)
    assert payload == b'xof 0303bin 0032' + body
    # Binary payloads need their own header to be recognised.
    doc = load(b'xof 0303bzip0032' + zlib.compress(payload))
    assert doc.header.format is FileFormat.BINARY
    assert doc.success
    assert doc.mesh.vertex_count == 0


def test_unknown_format() -> None:
    doc = load(b'PLY format, not DirectX')
    assert not doc.success
    assert [diag.kind for diag in doc.diagnostics.errors] == [ErrorKind.FORMAT_UNKNOWN]


def test_decompression_failed() -> None:
    doc = load(b'xof 0303tzip0032' + bytes(64), ParseOptions(filename='broken.x'))
    assert not doc.success
    assert not doc.meshes
    assert [diag.kind for diag in doc.diagnostics.errors] == [ErrorKind.DECOMPRESSION_FAILED]


def test_header_invalid() -> None:
    doc = load(b'xof 03x3txt 0032' + BODY)
    assert not doc.success
    assert [diag.kind for diag in doc.diagnostics.errors] == [ErrorKind.HEADER_INVALID]


def test_deep_frame_hierarchy() -> None:
    """Deeply nested frames are walked without recursion."""
    depth = 2000
    frames = b''.join(b'Frame F%d {\n' % i for i in range(depth)) + b'}\n' * depth
    anim = b'''
AnimationSet {
 Animation { { F1999 } AnimationKey { 2; 1; 0; 3; 0.0, 0.0, 0.0;;; } }
 Animation { { F0 } AnimationKey { 2; 1; 0; 3; 0.0, 0.0, 0.0;;; } }
}
'''
    mesh = b'Mesh Tri { 3; 0;0;0;, 1;0;0;, 0;1;0;; 1; 3; 0,1,2;; }\n'
    doc = load(b'xof 0303txt 0032\n' + mesh + frames + anim, ParseOptions(correct_timing=False))
    assert doc.success
    assert not doc.diagnostics.errors
    # The deepest frame's nearest animated ancestor is the root frame.
    assert [bone.name for bone in doc.mesh.bones] == ['F1999', 'F0']
    assert doc.mesh.bones[0].parent_index == 1
    assert doc.mesh.bones[1].is_root


def test_unwrap_keeps_header_fields() -> None:
    """The version and float size of the compressed file carry over to the payload."""
    assert unwrap_payload(b'xof 0302bzip0064', b'body') == b'xof 0302bin 0064body'
    assert unwrap_payload(b'xof 0303tzip0032', b'body') == b'xof 0303txt 0032body'
    # A bare archive has no header to copy from.
    assert unwrap_payload(zlib.compress(b'body'), b'body') == b'xof 0303txt 0032body'


def test_compressed_binary_doubles() -> None:
    """64-bit compressed binary files are read with 64-bit floats."""
    body = (
        BinToken.NAME.to_bytes(2, 'little') + (4).to_bytes(4, 'little') + b'Mesh'
        + BinToken.OBRACE.to_bytes(2, 'little')
        + BinToken.INTEGER_LIST.to_bytes(2, 'little') + (1).to_bytes(4, 'little') + (1).to_bytes(4, 'little')
        + BinToken.FLOAT_LIST.to_bytes(2, 'little') + (3).to_bytes(4, 'little')
        + struct.pack('<3d', 1.5, 2.5, 3.5)
        + BinToken.INTEGER_LIST.to_bytes(2, 'little') + (1).to_bytes(4, 'little') + (0).to_bytes(4, 'little')
        + BinToken.CBRACE.to_bytes(2, 'little')
    )
    payload = unwrap_payload(b'xof 0303bzip0064', body)
    doc = BinaryParser().parse(payload)
    assert doc.success
    assert doc.header.float_size == 64
    assert doc.mesh.vertices[0].position == Vec3(1.5, 2.5, 3.5)
