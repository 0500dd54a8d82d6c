"""The canonical scene model produced by the parsers.

A :py:class:`SceneDocument` owns one or more :py:class:`Mesh` objects, which in turn own their
vertices, faces, materials, bones and animation clips. Keyframe times are stored in the source
file's ticks, use :py:attr:`AnimationClip.duration_seconds` to get real time.
"""
from __future__ import annotations
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple
from typing_extensions import Final
from enum import Enum
import math

import attrs

from xscene.errors import Diagnostics
from xscene.math import Matrix4, Quaternion, Vec2, Vec3


if TYPE_CHECKING:
    from xscene.timing import TimingReport


__all__ = [
    'FileFormat', 'Header',
    'Vertex', 'Face', 'Material', 'Bone', 'Keyframe', 'AnimationClip', 'Mesh',
    'SceneDocument',
    'DEFAULT_TICKS_PER_SECOND', 'MAX_INFLUENCES', 'WEIGHT_TOLERANCE',
]

#: The DirectX default if a file doesn't specify ``AnimTicksPerSecond``.
DEFAULT_TICKS_PER_SECOND: Final = 4800.0
#: Maximum number of bones which can affect one vertex.
MAX_INFLUENCES: Final = 4
#: How far bone weights may stray from summing to 1.
WEIGHT_TOLERANCE: Final = 0.01


class FileFormat(Enum):
    """The kind of payload a file holds."""
    TEXT = 'txt'
    BINARY = 'bin'
    COMPRESSED = 'zip'
    UNKNOWN = 'unknown'


@attrs.define
class Header:
    """The information stored in the 16-byte preamble."""
    format: FileFormat = FileFormat.TEXT
    format_tag: str = 'txt '
    major_version: int = 3
    minor_version: int = 3
    float_size: int = 32
    #: Set if ``AnimTicksPerSecond`` was present.
    has_timing_info: bool = False
    ticks_per_second: float = DEFAULT_TICKS_PER_SECOND

    @property
    def version(self) -> Tuple[int, int]:
        """The major, minor version pair."""
        return self.major_version, self.minor_version


@attrs.define(eq=False)
class Vertex:
    """A single vertex, with up to 4 bone influences."""
    position: Vec3 = Vec3()
    normal: Vec3 = Vec3()
    tex_coord: Vec2 = Vec2()
    bone_indices: List[int] = attrs.Factory(list)
    bone_weights: List[float] = attrs.Factory(list)

    def add_influence(self, bone: int, weight: float) -> bool:
        """Add a bone influence.

        If the vertex already has the maximum, the weakest influence is replaced if this one is
        stronger. Returns whether the influence was kept as is, if not the weights
        will need to be renormalised.
        """
        if len(self.bone_indices) < MAX_INFLUENCES:
            self.bone_indices.append(bone)
            self.bone_weights.append(weight)
            return True
        weakest = min(range(len(self.bone_weights)), key=self.bone_weights.__getitem__)
        if self.bone_weights[weakest] < weight:
            self.bone_indices[weakest] = bone
            self.bone_weights[weakest] = weight
        return False

    def normalize_weights(self) -> None:
        """Rescale the weights so they sum to 1."""
        total = sum(self.bone_weights)
        if total > 0.0:
            self.bone_weights = [weight / total for weight in self.bone_weights]


@attrs.define(eq=False)
class Face:
    """A triangle. The material index is ``-1`` if none is assigned."""
    indices: Tuple[int, int, int]
    material_index: int = -1


@attrs.define(eq=False)
class Material:
    """Surface properties for a set of faces."""
    name: str = ''
    diffuse_color: Vec3 = Vec3(1.0, 1.0, 1.0)
    specular_color: Vec3 = Vec3()
    emissive_color: Vec3 = Vec3()
    shininess: float = 0.0
    transparency: float = 0.0
    diffuse_texture: str = ''
    normal_texture: str = ''
    specular_texture: str = ''


@attrs.define(eq=False)
class Bone:
    """A bone in the skeleton.

    The bind pose is the bone's rest transform, the offset matrix is its inverse (transforming
    mesh space into bone space).
    """
    name: str
    parent_name: str = ''
    parent_index: int = -1
    bind_pose: Matrix4 = Matrix4.identity()
    offset_matrix: Matrix4 = Matrix4.identity()
    child_indices: List[int] = attrs.Factory(list)

    @property
    def is_root(self) -> bool:
        return self.parent_index == -1


@attrs.define(eq=False)
class Keyframe:
    """A transform at a specific time, in ticks."""
    time: float
    position: Vec3 = Vec3()
    rotation: Quaternion = Quaternion()
    scale: Vec3 = Vec3(1.0, 1.0, 1.0)


@attrs.define(eq=False)
class AnimationClip:
    """A named animation.

    Keyframes are stored both in a flat list in time order, and per-bone if the source
    specified which bone each track applies to. Both reference the same keyframe objects.
    """
    name: str
    duration: float = 0.0
    ticks_per_second: float = DEFAULT_TICKS_PER_SECOND
    keyframes: List[Keyframe] = attrs.Factory(list)
    bone_keyframes: Dict[str, List[Keyframe]] = attrs.Factory(dict)
    #: The name given to the set in the file, if any.
    source_name: str = ''

    @property
    def duration_seconds(self) -> float:
        """The duration, in seconds."""
        if self.ticks_per_second <= 0.0:
            return 0.0
        return self.duration / self.ticks_per_second

    def all_keyframes(self) -> List[Keyframe]:
        """Return every distinct keyframe, flat ones first."""
        seen = set()
        result = []
        for key in self.keyframes:
            if id(key) not in seen:
                seen.add(id(key))
                result.append(key)
        for track in self.bone_keyframes.values():
            for key in track:
                if id(key) not in seen:
                    seen.add(id(key))
                    result.append(key)
        return result

    def sort_keyframes(self) -> None:
        """Stably sort the flat and per-bone lists by time."""
        self.keyframes.sort(key=lambda key: key.time)
        for track in self.bone_keyframes.values():
            track.sort(key=lambda key: key.time)


@attrs.define(eq=False)
class Mesh:
    """A mesh, along with the skeleton and animations that drive it."""
    name: str = ''
    vertices: List[Vertex] = attrs.Factory(list)
    faces: List[Face] = attrs.Factory(list)
    materials: List[Material] = attrs.Factory(list)
    bones: List[Bone] = attrs.Factory(list)
    animations: List[AnimationClip] = attrs.Factory(list)
    global_ticks_per_second: float = DEFAULT_TICKS_PER_SECOND
    #: Set if the rate was specified by the file, instead of being the default.
    has_timing_info: bool = False

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def material_count(self) -> int:
        return len(self.materials)

    @property
    def bone_count(self) -> int:
        return len(self.bones)

    def find_bone(self, name: str) -> Optional[int]:
        """Return the index of the named bone, or None if not present."""
        for i, bone in enumerate(self.bones):
            if bone.name == name:
                return i
        return None

    def validation_errors(self) -> List[str]:
        """Check the mesh for structural problems, returning a message for each."""
        errors: List[str] = []
        if not self.vertices:
            errors.append('No vertices found in mesh')
            return errors
        if not self.faces:
            errors.append('No faces found in mesh')

        vert_count = len(self.vertices)
        mat_count = len(self.materials)
        for i, face in enumerate(self.faces):
            for idx in face.indices:
                if not 0 <= idx < vert_count:
                    errors.append(f'Face {i} has invalid vertex index: {idx}')
            if face.material_index != -1 and not 0 <= face.material_index < mat_count:
                errors.append(f'Face {i} has invalid material index: {face.material_index}')

        bone_count = len(self.bones)
        for i, bone in enumerate(self.bones):
            if bone.parent_index == i:
                errors.append(f"Bone '{bone.name}' references itself as parent")
            elif bone.parent_index != -1 and not 0 <= bone.parent_index < bone_count:
                errors.append(f"Bone '{bone.name}' has invalid parent index: {bone.parent_index}")
            for child in bone.child_indices:
                if not 0 <= child < bone_count:
                    errors.append(f"Bone '{bone.name}' has invalid child index: {child}")

        for i, vert in enumerate(self.vertices):
            if len(vert.bone_indices) != len(vert.bone_weights):
                errors.append(f'Vertex {i} has mismatched bone indices and weights count')
                continue
            if len(vert.bone_indices) > MAX_INFLUENCES:
                errors.append(f'Vertex {i} has more than {MAX_INFLUENCES} bone influences')
            for bone_ind in vert.bone_indices:
                if not 0 <= bone_ind < bone_count:
                    errors.append(f'Vertex {i} has invalid bone index: {bone_ind}')
            if vert.bone_weights:
                total = math.fsum(vert.bone_weights)
                if abs(total - 1.0) > WEIGHT_TOLERANCE:
                    errors.append(f"Vertex {i} bone weights don't sum to 1.0: {total}")

        for clip in self.animations:
            if not clip.name:
                errors.append('Animation has no name')
            if clip.ticks_per_second <= 0:
                errors.append(f"Animation '{clip.name}' has invalid ticks per second: {clip.ticks_per_second}")
            if not clip.keyframes and not clip.bone_keyframes:
                errors.append(f"Animation '{clip.name}' has no keyframes")
            tracks = [clip.keyframes, *clip.bone_keyframes.values()]
            for track in tracks:
                for j in range(1, len(track)):
                    if track[j].time < track[j - 1].time:
                        errors.append(f"Animation '{clip.name}' keyframes out of order at index {j}")
                        break
            for bone_name in clip.bone_keyframes:
                if self.find_bone(bone_name) is None:
                    errors.append(f"Animation '{clip.name}' references non-existent bone: {bone_name}")

        if self.has_timing_info and self.global_ticks_per_second <= 0:
            errors.append(f'Invalid global ticks per second: {self.global_ticks_per_second}')
        return errors

    def is_valid(self) -> bool:
        """Check if the mesh has no structural problems."""
        return not self.validation_errors()


@attrs.define(eq=False)
class SceneDocument:
    """The result of loading a file."""
    header: Header = attrs.Factory(Header)
    meshes: List[Mesh] = attrs.Factory(list)
    #: Every material in the file, whether attached to a mesh or not.
    materials: List[Material] = attrs.Factory(list)
    #: Every animation clip in the file.
    animations: List[AnimationClip] = attrs.Factory(list)
    diagnostics: Diagnostics = attrs.Factory(Diagnostics)
    #: Set by the timing corrector, if it was run.
    timing_report: Optional[TimingReport] = None

    @property
    def mesh(self) -> Optional[Mesh]:
        """The primary mesh, which top-level materials and animations are attached to."""
        return self.meshes[0] if self.meshes else None

    @property
    def success(self) -> bool:
        return self.diagnostics.success

    def is_valid(self) -> bool:
        """Check the document parsed, and every mesh is structurally valid."""
        return self.success and bool(self.meshes) and all(mesh.is_valid() for mesh in self.meshes)

    def animation_names(self) -> List[str]:
        """Return the names of all animation clips."""
        return [clip.name for clip in self.animations]
