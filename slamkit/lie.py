"""Rotations and rigid-body transforms on the Lie groups SO(3) and SE(3).

Tangent vectors of SE(3) are ordered as ``[rho, phi]``: translational part
first, rotational part second.
"""

from __future__ import annotations

import math

import numpy as np

_EPS = 1e-10


def hat(v):
    """Return the matrix form of a tangent vector.

    A 3-vector gives a 3x3 skew-symmetric matrix; a 6-vector ``[rho, phi]``
    gives the 4x4 twist matrix.
    """
    v = np.asarray(v, dtype=float).reshape(-1)
    if v.size == 3:
        x, y, z = v
        return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])
    if v.size == 6:
        m = np.zeros((4, 4))
        m[:3, :3] = hat(v[3:])
        m[:3, 3] = v[:3]
        return m
    raise ValueError(f"hat expects a 3- or 6-vector, got {v.size} elements")


def vee(m):
    """Inverse of :func:`hat`."""
    m = np.asarray(m, dtype=float)
    if m.shape == (3, 3):
        return np.array([m[2, 1], m[0, 2], m[1, 0]])
    if m.shape == (4, 4):
        return np.concatenate([m[:3, 3], vee(m[:3, :3])])
    raise ValueError(f"vee expects a 3x3 or 4x4 matrix, got shape {m.shape}")


def _as_points(other):
    arr = np.asarray(other, dtype=float)
    if arr.shape[-1:] != (3,):
        raise ValueError(f"expected points with 3 coordinates, got shape {arr.shape}")
    return arr


class SO3:
    """A 3D rotation stored as a rotation matrix."""

    __slots__ = ("_matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            self._matrix = np.eye(3)
            return
        m = np.array(matrix, dtype=float)
        if m.shape != (3, 3):
            raise ValueError(f"rotation matrix must be 3x3, got shape {m.shape}")
        self._matrix = m

    @property
    def matrix(self):
        """The 3x3 rotation matrix (a copy)."""
        return self._matrix.copy()

    @classmethod
    def from_quaternion(cls, w, x, y, z):
        """Build a rotation from a quaternion; it is normalised first."""
        q = np.array([w, x, y, z], dtype=float)
        n = np.linalg.norm(q)
        if n < _EPS:
            raise ValueError("quaternion has (near) zero norm")
        w, x, y, z = q / n
        return cls(
            np.array(
                [
                    [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
                    [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
                    [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
                ]
            )
        )

    @classmethod
    def exp(cls, omega):
        """Exponential map from a rotation vector."""
        omega = np.asarray(omega, dtype=float).reshape(-1)
        if omega.size != 3:
            raise ValueError("rotation vector must have 3 elements")
        theta = float(np.linalg.norm(omega))
        k = hat(omega)
        if theta < _EPS:
            return cls(np.eye(3) + k + 0.5 * (k @ k))
        a = math.sin(theta) / theta
        b = (1.0 - math.cos(theta)) / (theta * theta)
        return cls(np.eye(3) + a * k + b * (k @ k))

    def log(self):
        """Logarithmic map; returns the rotation vector."""
        q = self.unit_quaternion()
        w, v = q[0], q[1:]
        n = float(np.linalg.norm(v))
        if n < _EPS:
            factor = 2.0 / w - (2.0 / 3.0) * n * n / (w ** 3)
        elif abs(w) < _EPS:
            factor = (math.pi if w > 0 else -math.pi) / n
        else:
            factor = 2.0 * math.atan(n / w) / n
        return factor * v

    def inverse(self):
        return SO3(self._matrix.T)

    def unit_quaternion(self):
        """Return the rotation as a unit quaternion ``[w, x, y, z]`` with ``w >= 0``."""
        m = self._matrix
        diag_sum = float(m[0, 0] + m[1, 1] + m[2, 2])
        if diag_sum > 0:
            s = 2.0 * math.sqrt(diag_sum + 1.0)
            q = [0.25 * s, (m[2, 1] - m[1, 2]) / s, (m[0, 2] - m[2, 0]) / s, (m[1, 0] - m[0, 1]) / s]
        elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
            s = 2.0 * math.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2])
            q = [(m[2, 1] - m[1, 2]) / s, 0.25 * s, (m[0, 1] + m[1, 0]) / s, (m[0, 2] + m[2, 0]) / s]
        elif m[1, 1] > m[2, 2]:
            s = 2.0 * math.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2])
            q = [(m[0, 2] - m[2, 0]) / s, (m[0, 1] + m[1, 0]) / s, 0.25 * s, (m[1, 2] + m[2, 1]) / s]
        else:
            s = 2.0 * math.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1])
            q = [(m[1, 0] - m[0, 1]) / s, (m[0, 2] + m[2, 0]) / s, (m[1, 2] + m[2, 1]) / s, 0.25 * s]
        q = np.array(q)
        q /= np.linalg.norm(q)
        return -q if q[0] < 0 else q

    def __matmul__(self, other):
        if isinstance(other, SO3):
            return SO3(self._matrix @ other._matrix)
        if isinstance(other, SE3):
            return NotImplemented
        return _as_points(other) @ self._matrix.T

    def __repr__(self):
        return f"SO3({self._matrix.tolist()!r})"


class SE3:
    """A rigid-body transform: rotation followed by translation."""

    __slots__ = ("_rotation", "_translation")

    def __init__(self, rotation=None, translation=None):
        if rotation is None:
            rotation = SO3()
        elif not isinstance(rotation, SO3):
            rotation = SO3(rotation)
        t = np.zeros(3) if translation is None else np.array(translation, dtype=float).reshape(-1)
        if t.size != 3:
            raise ValueError("translation must have 3 elements")
        self._rotation = rotation
        self._translation = t

    @property
    def rotation(self):
        return self._rotation

    @property
    def rotation_matrix(self):
        return self._rotation.matrix

    @property
    def translation(self):
        return self._translation.copy()

    @classmethod
    def from_quaternion(cls, w, x, y, z, translation=(0.0, 0.0, 0.0)):
        return cls(SO3.from_quaternion(w, x, y, z), translation)

    @staticmethod
    def _left_jacobian(omega):
        theta = float(np.linalg.norm(omega))
        k = hat(omega)
        if theta < _EPS:
            return np.eye(3) + 0.5 * k + (k @ k) / 6.0
        return (
            np.eye(3)
            + (1.0 - math.cos(theta)) / theta ** 2 * k
            + (theta - math.sin(theta)) / theta ** 3 * (k @ k)
        )

    @classmethod
    def exp(cls, xi):
        """Exponential map from a twist ``[rho, phi]``."""
        xi = np.asarray(xi, dtype=float).reshape(-1)
        if xi.size != 6:
            raise ValueError("twist must have 6 elements")
        rho, phi = xi[:3], xi[3:]
        return cls(SO3.exp(phi), cls._left_jacobian(phi) @ rho)

    def log(self):
        """Logarithmic map; returns the twist ``[rho, phi]``."""
        phi = self._rotation.log()
        theta = float(np.linalg.norm(phi))
        k = hat(phi)
        if theta < _EPS:
            v_inv = np.eye(3) - 0.5 * k + (k @ k) / 12.0
        else:
            c = (1.0 - theta * math.sin(theta) / (2.0 * (1.0 - math.cos(theta)))) / theta ** 2
            v_inv = np.eye(3) - 0.5 * k + c * (k @ k)
        return np.concatenate([v_inv @ self._translation, phi])

    def inverse(self):
        r_inv = self._rotation.inverse()
        return SE3(r_inv, -(r_inv.matrix @ self._translation))

    def act(self, point):
        """Transform a point, or an ``(N, 3)`` array of points."""
        return (self._rotation @ point) + self._translation

    def matrix(self):
        m = np.eye(4)
        m[:3, :3] = self._rotation.matrix
        m[:3, 3] = self._translation
        return m

    def matrix3x4(self):
        return self.matrix()[:3, :]

    def adjoint(self):
        """The 6x6 adjoint matrix for twists ordered ``[rho, phi]``."""
        r = self._rotation.matrix
        adj = np.zeros((6, 6))
        adj[:3, :3] = r
        adj[3:, 3:] = r
        adj[:3, 3:] = hat(self._translation) @ r
        return adj

    def __matmul__(self, other):
        if isinstance(other, SE3):
            return SE3(
                self._rotation @ other._rotation,
                self._rotation @ other._translation + self._translation,
            )
        if isinstance(other, SO3):
            return NotImplemented
        return self.act(other)

    def __repr__(self):
        return f"SE3(rotation={self._rotation.matrix.tolist()!r}, translation={self._translation.tolist()!r})"