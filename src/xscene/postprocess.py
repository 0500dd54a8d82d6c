"""Steps run once all objects are parsed, to link the model together.

This resolves material and animation ownership, the timing declared in the file, and the bone
hierarchy, then validates the result. Problems are recorded as warnings, nothing here aborts
the parse.
"""
from __future__ import annotations
from typing import TYPE_CHECKING, Dict, List, Set

from xscene.errors import ErrorKind
from xscene.logger import get_logger
from xscene.model import Bone, Mesh, SceneDocument


if TYPE_CHECKING:
    from xscene.parser import ParseContext


__all__ = [
    'finalize', 'link_materials', 'extract_timing', 'attach_animations',
    'build_skeleton', 'link_bone_tracks', 'validate_document',
]
LOGGER = get_logger(__name__)


def finalize(ctx: ParseContext) -> None:
    """Run every post-processing step on the parsed document."""
    document = ctx.document
    link_materials(ctx)
    extract_timing(ctx)
    for mesh in document.meshes:
        build_skeleton(ctx, mesh)
    attach_animations(document)
    link_bone_tracks(ctx)
    if ctx.options.validate:
        validate_document(document)


def link_materials(ctx: ParseContext) -> None:
    """Collect every material into the document.

    Top-level materials which no mesh references are attached to the primary mesh.
    """
    document = ctx.document
    top_level = document.materials
    materials = []
    for mesh in document.meshes:
        for material in mesh.materials:
            if material not in materials:
                materials.append(material)
    unused = [mat for mat in top_level if mat not in ctx.referenced_materials]
    primary = document.mesh
    if primary is not None:
        primary.materials.extend(unused)
    materials.extend(mat for mat in unused if mat not in materials)
    document.materials = materials


def extract_timing(ctx: ParseContext) -> None:
    """Apply the rate from ``AnimTicksPerSecond`` to the header, meshes and clips."""
    document = ctx.document
    explicit = ctx.ticks_per_second is not None
    rate = ctx.ticks_per_second if ctx.ticks_per_second is not None else ctx.options.default_ticks_per_second

    document.header.has_timing_info = explicit
    document.header.ticks_per_second = rate
    for mesh in document.meshes:
        mesh.global_ticks_per_second = rate
        mesh.has_timing_info = explicit
    for clip in document.animations:
        clip.ticks_per_second = rate
    if explicit:
        LOGGER.debug('Explicit timing: {} ticks per second', rate)


def attach_animations(document: SceneDocument) -> None:
    """Give every clip to the primary mesh."""
    primary = document.mesh
    if primary is None:
        return
    for clip in document.animations:
        if clip not in primary.animations:
            primary.animations.append(clip)


def build_skeleton(ctx: ParseContext, mesh: Mesh) -> None:
    """Resolve bone parent names into indices, and fill in the child lists.

    Bones with no explicit parent use the frame hierarchy. Frames which are not bones are
    passed through, so the nearest bone ancestor becomes the parent.
    """
    indices: Dict[str, int] = {bone.name: i for i, bone in enumerate(mesh.bones)}
    for bone in mesh.bones:
        bone.child_indices.clear()

    for i, bone in enumerate(mesh.bones):
        parent = bone.parent_name or ctx.frame_parents.get(bone.name, '')
        visited: Set[str] = set()
        while parent and parent not in indices and parent in ctx.frame_parents and parent not in visited:
            visited.add(parent)
            parent = ctx.frame_parents[parent]

        if not parent or parent not in indices:
            if bone.parent_name:
                ctx.diagnostics.warning(
                    ErrorKind.SEMANTIC,
                    f"Bone '{bone.name}' has unknown parent '{bone.parent_name}'",
                )
            bone.parent_index = -1
            continue
        parent_index = indices[parent]
        if parent_index == i:
            ctx.diagnostics.warning(ErrorKind.SEMANTIC, f"Bone '{bone.name}' references itself as parent")
            bone.parent_index = -1
            continue
        bone.parent_name = parent
        bone.parent_index = parent_index
        mesh.bones[parent_index].child_indices.append(i)


def link_bone_tracks(ctx: ParseContext) -> None:
    """Check every bone an animation refers to exists.

    Animated frames which are not yet bones are added to the primary mesh's skeleton. Tracks
    for names which are neither are dropped.
    """
    document = ctx.document
    primary = document.mesh
    if primary is None:
        return
    added: List[Bone] = []
    for clip in document.animations:
        for bone_name in list(clip.bone_keyframes):
            if primary.find_bone(bone_name) is not None:
                continue
            if bone_name in ctx.frame_parents:
                bone = Bone(bone_name)
                primary.bones.append(bone)
                added.append(bone)
                continue
            ctx.diagnostics.warning(
                ErrorKind.SEMANTIC,
                f"Animation '{clip.name}' references unknown bone: {bone_name}",
            )
            del clip.bone_keyframes[bone_name]
    if added:
        LOGGER.debug('Added {} animated frames as bones', len(added))
        build_skeleton(ctx, primary)


def validate_document(document: SceneDocument) -> None:
    """Record every semantic problem in the document as a warning."""
    diagnostics = document.diagnostics
    for mesh in document.meshes:
        prefix = f'Mesh "{mesh.name}": ' if mesh.name else ''
        for message in mesh.validation_errors():
            diagnostics.warning(ErrorKind.SEMANTIC, prefix + message)
    for clip in document.animations:
        if clip.duration <= 0:
            diagnostics.warning(ErrorKind.SEMANTIC, f"Animation '{clip.name}' has zero duration")
