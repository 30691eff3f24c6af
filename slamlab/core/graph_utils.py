# -*- coding: utf-8 -*-
"""
graph_utils.py
==============

Minimal SE(3) pose graph + sparse optimiser built on **pyceres**.

  • VertexSE3 / EdgeSE3     – graph entities (ids, estimates, measurements)
  • SparseOptimizer         – container + `optimize()` wrapper
  • EdgeSE3Cost             – 6-D relative-pose residual for pyceres

Each vertex becomes two parameter blocks, a quaternion (x, y, z, w) on the
`EigenQuaternionManifold` and a translation.  Fixed vertices are constant
blocks.  Edge error follows the g2o convention

    e = [t, q.xyz]  of  Z⁻¹ · (T0⁻¹ · T1)      (q with w >= 0)

whitened with the Cholesky factor of the information matrix.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pyceres

from slamlab.core.errors import VertexNotFound
from slamlab.core.pose_utils import SE3Quat

log = logging.getLogger("graph")


# --------------------------------------------------------------------- #
#  Graph entities
# --------------------------------------------------------------------- #
@dataclass
class VertexSE3:
    """One pose node.

    A vertex whose estimate was never set keeps the identity pose; this is
    what the optimiser starts from for such nodes.
    """

    id: int
    estimate: SE3Quat = field(default_factory=SE3Quat)
    fixed: bool = False

    def set_estimate(self, pose: SE3Quat) -> None:
        self.estimate = SE3Quat(pose.quat_coeffs(), pose.translation())


@dataclass
class EdgeSE3:
    """Relative-pose constraint between two vertices."""

    vertex0: VertexSE3
    vertex1: VertexSE3
    measurement: SE3Quat
    information: np.ndarray = field(default_factory=lambda: np.eye(6))

    @property
    def id0(self) -> int:
        return self.vertex0.id

    @property
    def id1(self) -> int:
        return self.vertex1.id

    def compute_error(self) -> np.ndarray:
        return se3_edge_error(self.measurement, self.vertex0.estimate, self.vertex1.estimate)

    def chi2(self) -> float:
        e = self.compute_error()
        return float(e @ self.information @ e)


def se3_edge_error(measurement: SE3Quat, pose0: SE3Quat, pose1: SE3Quat) -> np.ndarray:
    """6-vector error of *measurement* against the current vertex poses."""
    delta = measurement.inverse() * (pose0.inverse() * pose1)
    q = delta.quat_coeffs()        # already w >= 0 after composition
    return np.concatenate([delta.translation(), q[:3]])


# --------------------------------------------------------------------- #
#  pyceres residual
# --------------------------------------------------------------------- #
class EdgeSE3Cost(pyceres.CostFunction):
    """Whitened SE(3) edge residual, central-difference Jacobians."""

    def __init__(self, measurement: SE3Quat, information: np.ndarray, step: float = 1e-7):
        pyceres.CostFunction.__init__(self)
        self.set_num_residuals(6)
        self.set_parameter_block_sizes([4, 3, 4, 3])
        self.measurement = measurement
        self.sqrt_info = np.linalg.cholesky(information).T
        self.step = step

    def _residual(self, blocks) -> np.ndarray:
        q0, t0, q1, t1 = blocks
        err = se3_edge_error(self.measurement, SE3Quat(q0, t0), SE3Quat(q1, t1))
        return self.sqrt_info @ err

    def Evaluate(self, parameters, residuals, jacobians):
        blocks = [np.array(p, dtype=np.float64) for p in parameters]
        residuals[:] = self._residual(blocks)
        if jacobians is None:
            return True

        for b, jac in enumerate(jacobians):
            if jac is None:        # constant block
                continue
            J = np.zeros((6, blocks[b].size))
            for k in range(blocks[b].size):
                plus = [x.copy() for x in blocks]
                minus = [x.copy() for x in blocks]
                plus[b][k] += self.step
                minus[b][k] -= self.step
                J[:, k] = (self._residual(plus) - self._residual(minus)) / (2.0 * self.step)
            jac[:] = J.reshape(np.shape(jac))
        return True


# --------------------------------------------------------------------- #
#  Optimiser
# --------------------------------------------------------------------- #
@dataclass
class OptimizationResult:
    iterations: Optional[int]
    initial_cost: float
    final_cost: float
    num_residuals: int


class SparseOptimizer:
    """Owns the pose graph; vertices are looked up by id."""

    def __init__(self) -> None:
        self._vertices: Dict[int, VertexSE3] = {}
        self._edges: List[EdgeSE3] = []

    # ---------------- graph building ------------------- #
    def add_vertex(self, vertex: VertexSE3) -> VertexSE3:
        if vertex.id in self._vertices:
            raise ValueError(f"vertex id {vertex.id} already in graph")
        self._vertices[vertex.id] = vertex
        return vertex

    def vertex(self, vid: int) -> VertexSE3:
        try:
            return self._vertices[vid]
        except KeyError:
            raise VertexNotFound(f"no vertex with id {vid}") from None

    def add_edge(self, edge: EdgeSE3) -> EdgeSE3:
        for v in (edge.vertex0, edge.vertex1):
            if self._vertices.get(v.id) is not v:
                raise VertexNotFound(f"edge references vertex {v.id} which is not in the graph")
        self._edges.append(edge)
        return edge

    def vertices(self) -> Dict[int, VertexSE3]:
        return self._vertices

    def edges(self) -> List[EdgeSE3]:
        return self._edges

    def chi2(self) -> float:
        return float(sum(e.chi2() for e in self._edges))

    def __len__(self) -> int:
        return len(self._vertices)

    # ---------------- solving -------------------------- #
    def optimize(self, max_iters: int = 20, *, huber_thr: Optional[float] = None,
                 verbose: bool = False) -> Optional[OptimizationResult]:
        """Run Levenberg-Marquardt over every edge with a free end and write estimates back."""
        if not self._edges:
            log.info("nothing to optimise – graph has no edges")
            return None

        problem = pyceres.Problem()
        loss_fn = pyceres.HuberLoss(huber_thr) if huber_thr else None

        quat_params, trans_params = {}, {}
        for vid, v in self._vertices.items():
            quat_params[vid] = v.estimate.quat_coeffs()
            trans_params[vid] = v.estimate.translation()
            problem.add_parameter_block(quat_params[vid], 4)
            problem.set_manifold(quat_params[vid], pyceres.EigenQuaternionManifold())
            problem.add_parameter_block(trans_params[vid], 3)
            if v.fixed:
                problem.set_parameter_block_constant(quat_params[vid])
                problem.set_parameter_block_constant(trans_params[vid])

        # keep the python cost objects alive for the duration of the solve
        costs = []
        for e in self._edges:
            if e.vertex0.fixed and e.vertex1.fixed:
                # both ends constant, the residual cannot change
                continue
            cost = EdgeSE3Cost(e.measurement, e.information)
            costs.append(cost)
            problem.add_residual_block(
                cost, loss_fn,
                [quat_params[e.id0], trans_params[e.id0],
                 quat_params[e.id1], trans_params[e.id1]])

        if not costs:
            log.info("nothing to optimise – every edge joins two fixed vertices")
            return None

        opts = pyceres.SolverOptions()
        opts.max_num_iterations = max_iters
        opts.minimizer_progress_to_stdout = verbose
        summary = pyceres.SolverSummary()
        pyceres.solve(opts, problem, summary)

        for vid, v in self._vertices.items():
            if v.fixed:
                continue
            pose = SE3Quat(quat_params[vid], trans_params[vid])
            pose.normalize_rotation()
            v.estimate = pose

        iters = getattr(summary, "iterations_used",
                        getattr(summary, "num_successful_steps",
                                getattr(summary, "num_iterations", None)))
        result = OptimizationResult(iters, float(summary.initial_cost),
                                    float(summary.final_cost),
                                    problem.num_residual_blocks())
        log.info("[Pose graph]  iters=%s  cost %.6g -> %.6g  res=%d",
                 result.iterations, result.initial_cost, result.final_cost,
                 result.num_residuals)
        return result
