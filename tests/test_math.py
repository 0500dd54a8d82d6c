"""Test the vector and matrix types."""
import math

from dirty_equals import IsFloat
import pytest

from xscene.math import Matrix4, Quaternion, Vec2, Vec3


def assert_mat(mat: Matrix4, expected: Matrix4) -> None:
    """Compare matrices with a tolerance."""
    for row_a, row_b in zip(mat, expected):
        assert list(row_a) == [IsFloat(approx=val, delta=1e-6) for val in row_b]


def test_vec3_ops() -> None:
    a = Vec3(1.0, 2.0, 3.0)
    b = Vec3(4.0, 5.0, 6.0)
    assert a + b == Vec3(5.0, 7.0, 9.0)
    assert b - a == Vec3(3.0, 3.0, 3.0)
    assert a * 2 == Vec3(2.0, 4.0, 6.0)
    assert 2 * a == Vec3(2.0, 4.0, 6.0)
    assert -a == Vec3(-1.0, -2.0, -3.0)
    assert a.dot(b) == 32.0
    assert Vec3(1, 0, 0).cross(Vec3(0, 1, 0)) == Vec3(0, 0, 1)
    assert list(a) == [1.0, 2.0, 3.0]


def test_vec3_norm() -> None:
    assert Vec3(3.0, 4.0, 0.0).mag() == 5.0
    assert Vec3(0.0, 0.0, 8.0).norm() == Vec3(0.0, 0.0, 1.0)
    # Zero vectors stay zero.
    assert Vec3().norm() == Vec3()


def test_vec_from_seq() -> None:
    assert Vec3.from_seq([1, 2, 3, 4]) == Vec3(1.0, 2.0, 3.0)
    with pytest.raises(ValueError):
        Vec3.from_seq([1, 2])
    assert list(Vec2(0.25, 0.5)) == [0.25, 0.5]


def test_quaternion() -> None:
    assert Quaternion() == Quaternion(0.0, 0.0, 0.0, 1.0)
    assert Quaternion(0.0, 0.0, 0.0, 2.0).normalized() == Quaternion()
    assert Quaternion(0.0, 0.0, 0.0, 0.0).normalized() == Quaternion()
    half = math.sqrt(0.5)
    quarter_turn = Quaternion(0.0, 0.0, half, half)
    half_turn = quarter_turn @ quarter_turn
    assert list(half_turn) == [
        IsFloat(approx=0.0), IsFloat(approx=0.0),
        IsFloat(approx=1.0), IsFloat(approx=0.0, delta=1e-9),
    ]
    assert quarter_turn @ Quaternion() == quarter_turn


def test_matrix_construct() -> None:
    assert Matrix4().is_identity()
    assert Matrix4.identity() == Matrix4()
    mat = Matrix4.from_values(range(16))
    assert mat[1, 2] == 6.0
    assert mat.values() == tuple(float(x) for x in range(16))
    assert mat.transpose()[2, 1] == 6.0
    with pytest.raises(ValueError):
        Matrix4.from_values(range(15))
    with pytest.raises(ValueError):
        Matrix4([(1, 2, 3)] * 4)


def test_matrix_translation() -> None:
    """Translation is stored in the last row."""
    mat = Matrix4.from_translation(Vec3(1.0, 2.0, 3.0))
    assert mat.translation == Vec3(1.0, 2.0, 3.0)
    assert mat[3, 0] == 1.0
    assert not mat.is_identity()
    combined = mat @ Matrix4.from_translation(Vec3(10.0, 0.0, 0.0))
    assert combined.translation == Vec3(11.0, 2.0, 3.0)


def test_matrix_inverse() -> None:
    mat = Matrix4([
        (0.0, 1.0, 0.0, 0.0),
        (-1.0, 0.0, 0.0, 0.0),
        (0.0, 0.0, 2.0, 0.0),
        (5.0, -3.0, 1.0, 1.0),
    ])
    inv = mat.inverse()
    assert_mat(mat @ inv, Matrix4())
    assert_mat(inv @ mat, Matrix4())
    assert (mat @ inv).is_identity()


def test_matrix_singular() -> None:
    with pytest.raises(ValueError):
        Matrix4.from_values([0.0] * 16).inverse()


def test_matrix_hash() -> None:
    assert hash(Matrix4()) == hash(Matrix4.identity())
    assert len({Matrix4(), Matrix4.from_translation(Vec3(1, 0, 0)), Matrix4()}) == 2
    assert repr(Matrix4()).startswith('Matrix4([[1.0, 0.0, 0.0, 0.0]')
