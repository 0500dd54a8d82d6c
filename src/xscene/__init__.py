"""Loads DirectX ``.x`` scene files into meshes, materials, skeletons and animations."""
from xscene.errors import (
    Diagnostic, Diagnostics, ErrorKind, XFileError,
    FormatUnknown, HeaderInvalid, DecompressionFailed, XSyntaxError, SemanticError,
    TimingOutOfRange, TimingLargeDelta, Unsupported, TruncatedInput,
)
from xscene.math import Vec2, Vec3, Quaternion, Matrix4
from xscene.model import (
    FileFormat, Header, Vertex, Face, Material, Bone, Keyframe, AnimationClip, Mesh,
    SceneDocument,
)
from xscene.parser import ParseOptions
from xscene.timing import TimingCorrector, TimingReport, TimingCorrectionResult
from xscene.loader import load, load_file


__version__ = '1.0.0'
__all__ = [
    '__version__',
    'load', 'load_file', 'ParseOptions',

    'FileFormat', 'Header', 'Vertex', 'Face', 'Material', 'Bone', 'Keyframe',
    'AnimationClip', 'Mesh', 'SceneDocument',

    'Vec2', 'Vec3', 'Quaternion', 'Matrix4',

    'TimingCorrector', 'TimingReport', 'TimingCorrectionResult',

    'Diagnostic', 'Diagnostics', 'ErrorKind', 'XFileError',
    'FormatUnknown', 'HeaderInvalid', 'DecompressionFailed', 'XSyntaxError', 'SemanticError',
    'TimingOutOfRange', 'TimingLargeDelta', 'Unsupported', 'TruncatedInput',

    # Submodules:
    'binary', 'binformat', 'decompress', 'errors', 'loader', 'logger', 'math',  # pyright: ignore
    'model', 'parser', 'postprocess', 'sniffer', 'text', 'timing',  # pyright: ignore
]
