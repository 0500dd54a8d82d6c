"""Test the scene model and its validation."""
import pytest

from xscene.math import Vec3
from xscene.model import (
    MAX_INFLUENCES, AnimationClip, Bone, Face, Keyframe, Material, Mesh, SceneDocument, Vertex,
)


def triangle() -> Mesh:
    return Mesh('Tri', vertices=[
        Vertex(Vec3(0.0, 0.0, 0.0)),
        Vertex(Vec3(1.0, 0.0, 0.0)),
        Vertex(Vec3(0.0, 1.0, 0.0)),
    ], faces=[Face((0, 1, 2))])


def test_valid_mesh() -> None:
    mesh = triangle()
    assert mesh.validation_errors() == []
    assert mesh.is_valid()
    assert (mesh.vertex_count, mesh.face_count, mesh.material_count, mesh.bone_count) == (3, 1, 0, 0)


def test_empty_mesh() -> None:
    assert Mesh().validation_errors() == ['No vertices found in mesh']
    mesh = triangle()
    mesh.faces.clear()
    assert mesh.validation_errors() == ['No faces found in mesh']


def test_face_indices() -> None:
    mesh = triangle()
    mesh.faces.append(Face((0, 1, 3), material_index=2))
    mesh.materials.append(Material('Only'))
    assert mesh.validation_errors() == [
        'Face 1 has invalid vertex index: 3',
        'Face 1 has invalid material index: 2',
    ]


def test_bones() -> None:
    mesh = triangle()
    mesh.bones = [
        Bone('Root'),
        Bone('Self', parent_index=1),
        Bone('Lost', parent_index=7, child_indices=[9]),
    ]
    assert mesh.find_bone('Lost') == 2
    assert mesh.find_bone('Missing') is None
    assert mesh.bones[0].is_root
    assert mesh.validation_errors() == [
        "Bone 'Self' references itself as parent",
        "Bone 'Lost' has invalid parent index: 7",
        "Bone 'Lost' has invalid child index: 9",
    ]


def test_weights() -> None:
    mesh = triangle()
    mesh.bones = [Bone('Root')]
    mesh.vertices[0].bone_indices = [0]
    mesh.vertices[0].bone_weights = [0.5]
    mesh.vertices[1].bone_indices = [0, 1]
    mesh.vertices[1].bone_weights = [1.0]
    mesh.vertices[2].bone_indices = [3]
    mesh.vertices[2].bone_weights = [1.0]
    assert mesh.validation_errors() == [
        "Vertex 0 bone weights don't sum to 1.0: 0.5",
        'Vertex 1 has mismatched bone indices and weights count',
        'Vertex 2 has invalid bone index: 3',
    ]


def test_add_influence() -> None:
    """Only the strongest influences are kept."""
    vert = Vertex()
    for i in range(MAX_INFLUENCES):
        assert vert.add_influence(i, 0.1 * (i + 1))
    assert not vert.add_influence(10, 0.05)
    assert vert.bone_indices == [0, 1, 2, 3]
    assert not vert.add_influence(11, 0.5)
    assert vert.bone_indices == [11, 1, 2, 3]

    vert.normalize_weights()
    assert sum(vert.bone_weights) == pytest.approx(1.0)
    assert vert.bone_weights[0] == pytest.approx(0.5 / 1.4)


def test_normalize_zero() -> None:
    vert = Vertex(bone_indices=[0], bone_weights=[0.0])
    vert.normalize_weights()
    assert vert.bone_weights == [0.0]


def test_animation_checks() -> None:
    mesh = triangle()
    mesh.bones = [Bone('Root')]
    mesh.animations = [
        AnimationClip('', keyframes=[Keyframe(0.0)]),
        AnimationClip('Broken', ticks_per_second=0.0),
        AnimationClip('Unordered', keyframes=[Keyframe(10.0), Keyframe(5.0)]),
        AnimationClip('Ghost', bone_keyframes={'Ghost': [Keyframe(0.0)], 'Root': [Keyframe(0.0)]}),
    ]
    assert mesh.validation_errors() == [
        'Animation has no name',
        "Animation 'Broken' has invalid ticks per second: 0.0",
        "Animation 'Broken' has no keyframes",
        "Animation 'Unordered' keyframes out of order at index 1",
        "Animation 'Ghost' references non-existent bone: Ghost",
    ]


def test_clip_keyframes() -> None:
    """Keyframes shared between lists are only returned once."""
    shared = Keyframe(5.0)
    clip = AnimationClip('Clip', duration=9600.0, keyframes=[Keyframe(10.0), shared])
    clip.bone_keyframes['Bone'] = [shared, Keyframe(0.0)]
    assert clip.duration_seconds == 2.0
    keys = clip.all_keyframes()
    assert len(keys) == 3
    assert keys[1] is shared

    clip.sort_keyframes()
    assert [key.time for key in clip.keyframes] == [5.0, 10.0]
    assert [key.time for key in clip.bone_keyframes['Bone']] == [0.0, 5.0]
    assert AnimationClip('Zero', ticks_per_second=0.0).duration_seconds == 0.0


def test_document() -> None:
    doc = SceneDocument()
    assert doc.mesh is None
    assert not doc.success
    assert not doc.is_valid()

    doc.meshes.append(triangle())
    doc.animations.append(AnimationClip('Walk'))
    doc.diagnostics.success = True
    assert doc.mesh is doc.meshes[0]
    assert doc.is_valid()
    assert doc.animation_names() == ['Walk']
