# -*- coding: utf-8 -*-
"""
pose_utils.py
=============

Rigid SE(3) pose stored as (unit quaternion, translation).

Quaternions are kept in **x, y, z, w** order (Eigen / SciPy storage order) so
they can be handed to ``pyceres.EigenQuaternionManifold`` without shuffling.
Composition ``a * b`` maps points from frame *b* into frame *a*:

    (a * b).apply(p) == a.apply(b.apply(p))

After composition the rotation is renormalised with ``w >= 0``.
"""
from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation as R


class SE3Quat:
    """Rigid transform (rotation quaternion + translation)."""

    __slots__ = ("_q", "_t")

    def __init__(self, quat=None, tran=None):
        # raw coefficients are kept as given; call normalize_rotation() to fix them up
        self._q = (np.array([0.0, 0.0, 0.0, 1.0]) if quat is None
                   else np.asarray(quat, dtype=np.float64).reshape(4).copy())
        self._t = (np.zeros(3) if tran is None
                   else np.asarray(tran, dtype=np.float64).reshape(3).copy())

    # ------------------------------------------------------------------ #
    #  Constructors
    # ------------------------------------------------------------------ #
    @classmethod
    def from_rotation(cls, rot: R, tran=None) -> "SE3Quat":
        pose = cls(rot.as_quat(), tran)
        pose.normalize_rotation()
        return pose

    @classmethod
    def from_rotation_z(cls, angle: float, tran=None) -> "SE3Quat":
        """Rotation of *angle* radians about +z."""
        return cls.from_rotation(R.from_rotvec([0.0, 0.0, angle]), tran)

    # ------------------------------------------------------------------ #
    #  Accessors
    # ------------------------------------------------------------------ #
    def quat_coeffs(self) -> np.ndarray:
        """Quaternion coefficients (x, y, z, w), copy."""
        return self._q.copy()

    def translation(self) -> np.ndarray:
        return self._t.copy()

    def rotation(self) -> R:
        return R.from_quat(self._q)

    def rotation_matrix(self) -> np.ndarray:
        return self.rotation().as_matrix()

    def to_homogeneous_matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rotation_matrix()
        T[:3, 3] = self._t
        return T

    def to_vector(self) -> np.ndarray:
        """(tx, ty, tz, qx, qy, qz, qw)"""
        return np.concatenate([self._t, self._q])

    # ------------------------------------------------------------------ #
    #  Group operations
    # ------------------------------------------------------------------ #
    def normalize_rotation(self) -> None:
        """Scale the quaternion to unit norm with a non-negative w (in place)."""
        norm = np.linalg.norm(self._q)
        if norm == 0.0:
            raise ValueError("cannot normalise a zero quaternion")
        if self._q[3] < 0:
            self._q = -self._q
        self._q = self._q / norm

    def inverse(self) -> "SE3Quat":
        rot_inv = self.rotation().inv()
        return SE3Quat(np.array([-self._q[0], -self._q[1], -self._q[2], self._q[3]]),
                       -rot_inv.apply(self._t))

    def apply(self, pts) -> np.ndarray:
        """Transform a point (3,) or points (N,3)."""
        return self.rotation().apply(pts) + self._t

    def __mul__(self, other: "SE3Quat") -> "SE3Quat":
        if not isinstance(other, SE3Quat):
            return NotImplemented
        rot_a = self.rotation()
        out = SE3Quat((rot_a * other.rotation()).as_quat(),
                      self._t + rot_a.apply(other._t))
        out.normalize_rotation()
        return out

    # ------------------------------------------------------------------ #
    #  Comparison / printing
    # ------------------------------------------------------------------ #
    def allclose(self, other: "SE3Quat", atol: float = 1e-9) -> bool:
        """Compare as homogeneous matrices, so q and -q are the same rotation."""
        return bool(np.allclose(self.to_homogeneous_matrix(),
                                other.to_homogeneous_matrix(), rtol=0.0, atol=atol))

    def __repr__(self) -> str:
        t = np.array2string(self._t, precision=4, suppress_small=True)
        q = np.array2string(self._q, precision=4, suppress_small=True)
        return f"SE3Quat(t={t}, q_xyzw={q})"


def relative_pose(pose_a: SE3Quat, pose_b: SE3Quat) -> SE3Quat:
    """Pose of *b* expressed in frame *a*: ``a⁻¹ ∘ b``."""
    return pose_a.inverse() * pose_b
