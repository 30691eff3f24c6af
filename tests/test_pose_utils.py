"""Tests for pose_utils.py: SE3Quat composition, inverse and normalisation.

Run with:
    pytest tests/test_pose_utils.py
"""
import math

import numpy as np
import pytest
from scipy.spatial.transform import Rotation as R

from slamlab.core.pose_utils import SE3Quat, relative_pose


# --------------------------------------------------------------------------- #
#  Helpers
# --------------------------------------------------------------------------- #
def _random_pose(rng) -> SE3Quat:
    return SE3Quat.from_rotation(R.from_rotvec(rng.uniform(-np.pi, np.pi, 3)),
                                 rng.uniform(-2.0, 2.0, 3))


# --------------------------------------------------------------------------- #
#  1. Basic construction
# --------------------------------------------------------------------------- #
def test_default_is_identity():
    pose = SE3Quat()
    assert np.allclose(pose.to_homogeneous_matrix(), np.eye(4))
    assert np.allclose(pose.quat_coeffs(), [0, 0, 0, 1])


def test_rotation_z_matches_closed_form():
    angle = 2.0 * math.pi / 10
    pose = SE3Quat.from_rotation_z(angle, [1.0, 2.0, 3.0])
    T = pose.to_homogeneous_matrix()
    expected = np.array([[math.cos(angle), -math.sin(angle), 0.0],
                         [math.sin(angle),  math.cos(angle), 0.0],
                         [0.0, 0.0, 1.0]])
    assert np.allclose(T[:3, :3], expected, atol=1e-12)
    assert np.allclose(T[:3, 3], [1.0, 2.0, 3.0])


# --------------------------------------------------------------------------- #
#  2. Group operations
# --------------------------------------------------------------------------- #
def test_composition_matches_matrix_product():
    rng = np.random.default_rng(1)
    for _ in range(20):
        a, b = _random_pose(rng), _random_pose(rng)
        ab = a * b
        assert np.allclose(ab.to_homogeneous_matrix(),
                           a.to_homogeneous_matrix() @ b.to_homogeneous_matrix(), atol=1e-12)
        assert ab.quat_coeffs()[3] >= 0.0


def test_inverse_gives_identity():
    rng = np.random.default_rng(2)
    for _ in range(20):
        a = _random_pose(rng)
        assert (a * a.inverse()).allclose(SE3Quat(), atol=1e-12)
        assert (a.inverse() * a).allclose(SE3Quat(), atol=1e-12)


def test_relative_pose_convention():
    rng = np.random.default_rng(3)
    a, b = _random_pose(rng), _random_pose(rng)
    rel = relative_pose(a, b)
    assert (a * rel).allclose(b, atol=1e-12)


def test_apply_transforms_points():
    pose = SE3Quat.from_rotation_z(math.pi / 2, [1.0, 0.0, 0.0])
    assert np.allclose(pose.apply([1.0, 0.0, 0.0]), [1.0, 1.0, 0.0], atol=1e-12)


def test_normalize_rotation_unit_norm_positive_w():
    pose = SE3Quat([0.1, -0.2, 0.3, -2.0], [0, 0, 0])
    pose.normalize_rotation()
    q = pose.quat_coeffs()
    assert abs(np.linalg.norm(q) - 1.0) < 1e-12
    assert q[3] > 0


def test_normalize_zero_quaternion_raises():
    with pytest.raises(ValueError):
        SE3Quat([0, 0, 0, 0]).normalize_rotation()


def test_sign_flipped_quaternions_compare_equal():
    q = np.array([0.1, 0.2, 0.3, 0.9])
    q /= np.linalg.norm(q)
    assert SE3Quat(q, [1, 2, 3]).allclose(SE3Quat(-q, [1, 2, 3]))
