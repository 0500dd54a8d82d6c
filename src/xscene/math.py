"""Small vector, quaternion and matrix types used by the scene model.

All of these are immutable. Matrices are row-major, with translation stored in the last row,
matching the layout DirectX writes into ``FrameTransformMatrix`` and ``SkinWeights`` blocks.
Multiplication is done via the ``@`` operator, where the left is transformed by the right.
"""
from __future__ import annotations
from typing import Iterable, Iterator, Tuple
from typing_extensions import Final, Self
import math

import attrs


__all__ = ['Vec2', 'Vec3', 'Quaternion', 'Matrix4']

Row = Tuple[float, float, float, float]
# Below this determinants are treated as singular.
SINGULAR_EPSILON: Final = 1e-12


@attrs.frozen
class Vec2:
    """A 2D texture coordinate."""
    u: float = 0.0
    v: float = 0.0

    def __iter__(self) -> Iterator[float]:
        yield self.u
        yield self.v


@attrs.frozen
class Vec3:
    """A 3D vector, also used for RGB colours."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z

    def __add__(self, other: Vec3) -> Vec3:
        if isinstance(other, Vec3):
            return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)
        return NotImplemented

    def __sub__(self, other: Vec3) -> Vec3:
        if isinstance(other, Vec3):
            return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)
        return NotImplemented

    def __mul__(self, other: float) -> Vec3:
        if isinstance(other, (int, float)):
            return Vec3(self.x * other, self.y * other, self.z * other)
        return NotImplemented

    __rmul__ = __mul__

    def __neg__(self) -> Vec3:
        return Vec3(-self.x, -self.y, -self.z)

    def mag(self) -> float:
        """Compute the length of the vector."""
        return math.sqrt(self.x ** 2 + self.y ** 2 + self.z ** 2)

    def norm(self) -> Vec3:
        """Return a unit vector in the same direction, or the zero vector if this has no length."""
        mag = self.mag()
        if mag == 0.0:
            return Vec3()
        return Vec3(self.x / mag, self.y / mag, self.z / mag)

    def dot(self, other: Vec3) -> float:
        """Return the dot product of both vectors."""
        return self.x * other.x + self.y * other.y + self.z * other.z

    def cross(self, other: Vec3) -> Vec3:
        """Return the cross product of both vectors."""
        return Vec3(
            self.y * other.z - self.z * other.y,
            self.z * other.x - self.x * other.z,
            self.x * other.y - self.y * other.x,
        )

    @classmethod
    def from_seq(cls, values: Iterable[float]) -> Self:
        """Build from the first three values of a sequence."""
        x, y, z = list(values)[:3]
        return cls(float(x), float(y), float(z))


@attrs.frozen
class Quaternion:
    """A rotation quaternion. The default is the identity rotation."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z
        yield self.w

    def mag(self) -> float:
        """Compute the length of the quaternion."""
        return math.sqrt(self.x ** 2 + self.y ** 2 + self.z ** 2 + self.w ** 2)

    def normalized(self) -> Quaternion:
        """Return a unit quaternion. A zero quaternion becomes the identity."""
        mag = self.mag()
        if mag == 0.0:
            return Quaternion()
        return Quaternion(self.x / mag, self.y / mag, self.z / mag, self.w / mag)

    def __matmul__(self, other: Quaternion) -> Quaternion:
        """Compose two rotations (Hamilton product)."""
        if not isinstance(other, Quaternion):
            return NotImplemented
        return Quaternion(
            self.w * other.x + self.x * other.w + self.y * other.z - self.z * other.y,
            self.w * other.y - self.x * other.z + self.y * other.w + self.z * other.x,
            self.w * other.z + self.x * other.y - self.y * other.x + self.z * other.w,
            self.w * other.w - self.x * other.x - self.y * other.y - self.z * other.z,
        )


class Matrix4:
    """An immutable row-major 4x4 matrix."""
    __slots__ = ('_rows', )
    _rows: Tuple[Row, Row, Row, Row]

    def __init__(self, rows: Iterable[Iterable[float]] | None = None) -> None:
        if rows is None:
            self._rows = _IDENTITY
            return
        rows = [tuple(map(float, row)) for row in rows]
        if len(rows) != 4 or any(len(row) != 4 for row in rows):
            raise ValueError(f'Matrix4 requires 4 rows of 4 values, not {rows!r}')
        self._rows = tuple(rows)  # type: ignore[assignment]

    @classmethod
    def identity(cls) -> Matrix4:
        """Return the identity matrix."""
        return cls()

    @classmethod
    def from_values(cls, values: Iterable[float]) -> Matrix4:
        """Build from 16 values, in row-major order."""
        values = list(values)
        if len(values) != 16:
            raise ValueError(f'Matrix4 requires 16 values, got {len(values)}')
        return cls(values[i:i + 4] for i in range(0, 16, 4))

    @classmethod
    def from_translation(cls, offset: Vec3) -> Matrix4:
        """Build a matrix which only translates."""
        return cls([
            (1.0, 0.0, 0.0, 0.0),
            (0.0, 1.0, 0.0, 0.0),
            (0.0, 0.0, 1.0, 0.0),
            (offset.x, offset.y, offset.z, 1.0),
        ])

    def __getitem__(self, item: Tuple[int, int]) -> float:
        row, col = item
        return self._rows[row][col]

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows)

    def values(self) -> Tuple[float, ...]:
        """Return all 16 values in row-major order."""
        return tuple(val for row in self._rows for val in row)

    @property
    def translation(self) -> Vec3:
        """The translation part of the matrix."""
        x, y, z, _ = self._rows[3]
        return Vec3(x, y, z)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Matrix4):
            return self._rows == other._rows
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._rows)

    def __repr__(self) -> str:
        return f'Matrix4({[list(row) for row in self._rows]!r})'

    def is_identity(self, tolerance: float = 1e-6) -> bool:
        """Check if this is the identity matrix, within the tolerance."""
        return all(
            abs(a - b) <= tolerance
            for row_a, row_b in zip(self._rows, _IDENTITY)
            for a, b in zip(row_a, row_b)
        )

    def __matmul__(self, other: Matrix4) -> Matrix4:
        if not isinstance(other, Matrix4):
            return NotImplemented
        cols = list(zip(*other._rows))
        return Matrix4(
            [sum(a * b for a, b in zip(row, col)) for col in cols]
            for row in self._rows
        )

    def transpose(self) -> Matrix4:
        """Return the transposed matrix."""
        return Matrix4(zip(*self._rows))

    def inverse(self) -> Matrix4:
        """Compute the inverse via Gauss-Jordan elimination.

        :raises ValueError: If the matrix is singular.
        """
        work = [list(row) + [1.0 if i == j else 0.0 for j in range(4)] for i, row in enumerate(self._rows)]
        for col in range(4):
            pivot = max(range(col, 4), key=lambda r: abs(work[r][col]))
            if abs(work[pivot][col]) < SINGULAR_EPSILON:
                raise ValueError('Matrix is singular, cannot invert!')
            work[col], work[pivot] = work[pivot], work[col]
            scale = work[col][col]
            work[col] = [val / scale for val in work[col]]
            for row in range(4):
                if row != col and work[row][col] != 0.0:
                    factor = work[row][col]
                    work[row] = [a - factor * b for a, b in zip(work[row], work[col])]
        return Matrix4(row[4:] for row in work)


_IDENTITY: Tuple[Row, Row, Row, Row] = (
    (1.0, 0.0, 0.0, 0.0),
    (0.0, 1.0, 0.0, 0.0),
    (0.0, 0.0, 1.0, 0.0),
    (0.0, 0.0, 0.0, 1.0),
)
