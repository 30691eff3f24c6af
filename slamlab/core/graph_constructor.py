# graph_constructor.py
"""
Synthetic pose-graph generators.

``GraphConstructor`` holds the bookkeeping every generator needs (id
allocation, ground-truth list, noise injection, edge creation);
``SE3LoopConstructor`` lays poses on a planar circle and closes the loop.

Usage
-----
    optimizer = SparseOptimizer()
    SE3LoopConstructor().construct(optimizer, G2oConfig(edge_noise=True, seed=0))
    optimizer.optimize()
"""
from __future__ import annotations

import abc
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from slamlab.core.graph_utils import EdgeSE3, SparseOptimizer, VertexSE3
from slamlab.core.pose_utils import SE3Quat, relative_pose

log = logging.getLogger("constructor")

EDGE_INFORMATION = 10.0 * np.eye(6)


# --------------------------------------------------------------------------- #
#  Configuration
# --------------------------------------------------------------------------- #
@dataclass
class G2oConfig:
    init_vtx: bool = False          # start free vertices at their ground truth
    edge_noise: bool = False        # perturb edge measurements
    tran_noise: np.ndarray = field(default_factory=lambda: np.full(3, 0.1))
    quat_noise: np.ndarray = field(default_factory=lambda: np.full(4, 0.02))
    traj_radius: float = 2.0
    circle_nodes: int = 10
    seed: Optional[int] = None
    rng: Optional[np.random.Generator] = None

    def __post_init__(self):
        self.tran_noise = np.asarray(self.tran_noise, dtype=np.float64).reshape(3)
        self.quat_noise = np.asarray(self.quat_noise, dtype=np.float64).reshape(4)
        if self.circle_nodes < 1:
            raise ValueError("circle_nodes must be >= 1")
        if self.rng is None:
            self.rng = np.random.default_rng(self.seed)


# --------------------------------------------------------------------------- #
#  Base class
# --------------------------------------------------------------------------- #
class GraphConstructor(abc.ABC):
    """Shared helpers for generators that emit vertices + edges into an optimiser."""

    def __init__(self) -> None:
        self.optimizer: Optional[SparseOptimizer] = None
        self.config = G2oConfig()
        self.gt_poses: List[SE3Quat] = []
        self._next_id = 0

    @abc.abstractmethod
    def construct(self, optimizer: SparseOptimizer, config: G2oConfig) -> None:
        """Populate *optimizer* according to *config*."""

    def get_new_id(self) -> int:
        vid = self._next_id
        self._next_id += 1
        return vid

    def add_pose_vertex(self, pose: SE3Quat, fixed: bool = False) -> VertexSE3:
        """Append *pose* to the ground truth and add its vertex to the optimiser."""
        log.debug("add pose: t=%s r=%s", pose.translation(), pose.quat_coeffs())
        vertex = VertexSE3(self.get_new_id(), fixed=fixed)
        if fixed or self.config.init_vtx:
            vertex.set_estimate(pose)
        self.optimizer.add_vertex(vertex)
        self.gt_poses.append(SE3Quat(pose.quat_coeffs(), pose.translation()))
        return vertex

    def add_edge_pose_pose(self, id0: int, id1: int, relpose: SE3Quat) -> EdgeSE3:
        log.debug("add edge: id0=%d, id1=%d, t=%s, r=%s",
                  id0, id1, relpose.translation(), relpose.quat_coeffs())
        edge = EdgeSE3(self.optimizer.vertex(id0), self.optimizer.vertex(id1),
                       relpose, EDGE_INFORMATION.copy())
        return self.optimizer.add_edge(edge)

    def add_noise_pose_measurement(self, srcpose: SE3Quat) -> SE3Quat:
        """Uniform noise in [-bound/2, bound/2) per coefficient, then renormalise."""
        rng = self.config.rng
        tran_w_noise = srcpose.translation() + self.config.tran_noise * (rng.random(3) - 0.5)
        quat_w_noise = srcpose.quat_coeffs() + self.config.quat_noise * (rng.random(4) - 0.5)

        pose_w_noise = SE3Quat(quat_w_noise, tran_w_noise)
        pose_w_noise.normalize_rotation()
        log.debug("[addNoise] before pose: %s  after pose: %s", srcpose, pose_w_noise)
        return pose_w_noise

    def _measurement(self, id0: int, id1: int) -> SE3Quat:
        relpose = relative_pose(self.gt_poses[id0], self.gt_poses[id1])
        if self.config.edge_noise:
            relpose = self.add_noise_pose_measurement(relpose)
        return relpose


# --------------------------------------------------------------------------- #
#  Closed loop on a circle
# --------------------------------------------------------------------------- #
class SE3LoopConstructor(GraphConstructor):
    """
    Vertex 0 at the origin and vertex 1 at (1,0,0), both fixed, then
    `circle_nodes` free poses walking a circle of `traj_radius` that starts
    at vertex 1.  Consecutive vertices are chained and vertex 1 is tied to
    the last one, which lands back on vertex 1's pose.
    """

    def __init__(self) -> None:
        super().__init__()
        self.traj_radius = 2.0
        self.center = np.array([1.0, self.traj_radius, 0.0])

    def construct(self, optimizer: SparseOptimizer, config: G2oConfig) -> None:
        self.optimizer = optimizer
        self.config = config
        self.traj_radius = config.traj_radius
        self.center = np.array([1.0, self.traj_radius, 0.0])

        self.set_init_pose_vertices()
        self.set_circle_pose_vertices()
        self.set_edges_btw_poses()

    def set_init_pose_vertices(self) -> None:
        self.add_pose_vertex(SE3Quat(), fixed=True)
        self.add_pose_vertex(SE3Quat(tran=[self.center[0], 0.0, 0.0]), fixed=True)

    def set_circle_pose_vertices(self) -> None:
        angle = 2.0 * math.pi / self.config.circle_nodes
        r = self.traj_radius
        relpose = SE3Quat.from_rotation_z(
            angle, [r * math.sin(angle), r - r * math.cos(angle), 0.0])

        for _ in range(self.config.circle_nodes):
            self.add_pose_vertex(self.gt_poses[-1] * relpose)

    def set_edges_btw_poses(self) -> None:
        for i in range(1, len(self.gt_poses)):
            self.add_edge_pose_pose(i - 1, i, self._measurement(i - 1, i))

        last = len(self.gt_poses) - 1
        loop = self._measurement(1, last)
        log.info("relpose between 1 and last:\n%s",
                 np.array2string(relative_pose(self.gt_poses[1], self.gt_poses[last])
                                 .to_homogeneous_matrix(), precision=6, suppress_small=True))
        self.add_edge_pose_pose(1, last, loop)
