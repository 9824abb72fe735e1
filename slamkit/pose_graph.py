"""Pose graph optimisation on SE(3) with poses updated by left multiplication.

Graphs are read from and written to the text format with ``VERTEX_SE3:QUAT``
and ``EDGE_SE3:QUAT`` records.
"""

from __future__ import annotations

import argparse
import sys
import warnings
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from slamkit.lie import SE3

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"
DEFAULT_OUTPUT = "result_lie.g2o"

_UPPER = np.triu_indices(6)
_BLOCK_ROWS = np.repeat(np.arange(6), 6)
_BLOCK_COLS = np.tile(np.arange(6), 6)
_MAX_ATTEMPTS = 10


def jr_inv(error):
    """Approximate inverse right Jacobian of SE(3) at the pose error ``error``.

    The identity is used: it is the zeroth-order approximation and is exact
    where the error vanishes.
    """
    return np.eye(6)


@dataclass
class Edge:
    """A relative-pose measurement between two vertices."""

    source: int
    target: int
    measurement: SE3
    information: np.ndarray = field(default_factory=lambda: np.eye(6))

    def __post_init__(self):
        info = np.array(self.information, dtype=float)
        if info.shape != (6, 6):
            raise ValueError(f"information matrix must be 6x6, got shape {info.shape}")
        self.information = info

    def error(self, vertices):
        """The twist ``log(Z^-1 * Ti^-1 * Tj)`` for the poses in ``vertices``."""
        vi = vertices[self.source]
        vj = vertices[self.target]
        return (self.measurement.inverse() @ vi.inverse() @ vj).log()

    def jacobians(self, vertices):
        """Jacobians of the error with respect to left updates of both vertices."""
        j = jr_inv(SE3.exp(self.error(vertices)))
        adj = vertices[self.target].inverse().adjoint()
        return -j @ adj, j @ adj


def _chi2(edge, vertices):
    e = edge.error(vertices)
    return float(e @ edge.information @ e)


@dataclass
class PoseGraph:
    """Poses keyed by vertex id, edges between them, and the ids held fixed."""

    vertices: dict = field(default_factory=dict)
    edges: list = field(default_factory=list)
    fixed: set = field(default_factory=set)

    def _total(self, vertices):
        return sum((_chi2(edge, vertices) for edge in self.edges), 0.0)

    def total_error(self):
        """Sum of ``e^T * Omega * e`` over all edges."""
        return self._total(self.vertices)

    def _linearize(self, index, n):
        rows, cols, data = [], [], []
        b = np.zeros(6 * n)
        for edge in self.edges:
            e = edge.error(self.vertices)
            ji, jj = edge.jacobians(self.vertices)
            omega = edge.information
            blocks = [
                (index[vid], jac)
                for vid, jac in ((edge.source, ji), (edge.target, jj))
                if vid in index
            ]
            for a, ja in blocks:
                b[6 * a : 6 * a + 6] += ja.T @ omega @ e
                for c, jc in blocks:
                    rows.append(_BLOCK_ROWS + 6 * a)
                    cols.append(_BLOCK_COLS + 6 * c)
                    data.append((ja.T @ omega @ jc).ravel())
        if data:
            h = sparse.coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(6 * n, 6 * n),
            ).tocsc()
        else:
            h = sparse.csc_matrix((6 * n, 6 * n))
        return h, b

    def _apply(self, dx, index):
        candidate = dict(self.vertices)
        for vid, i in index.items():
            candidate[vid] = SE3.exp(dx[6 * i : 6 * i + 6]) @ candidate[vid]
        return candidate

    def optimize(self, iterations=30):
        """Run Levenberg-Marquardt for up to ``iterations`` steps; return the final error."""
        free = [vid for vid in self.vertices if vid not in self.fixed]
        index = {vid: i for i, vid in enumerate(free)}
        n = len(free)
        cost = self.total_error()
        if n == 0 or not self.edges:
            return cost

        lam = None
        nu = 2.0
        identity = sparse.identity(6 * n, format="csc")
        for _ in range(iterations):
            h, b = self._linearize(index, n)
            if lam is None:
                lam = 1e-5 * max(float(h.diagonal().max()), 1e-12)
            accepted = False
            for _attempt in range(_MAX_ATTEMPTS):
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    dx = np.asarray(spsolve(h + lam * identity, -b)).reshape(-1)
                if not np.all(np.isfinite(dx)):
                    lam *= nu
                    nu *= 2.0
                    continue
                candidate = self._apply(dx, index)
                new_cost = self._total(candidate)
                predicted = float(dx @ (lam * dx - b))
                if np.isfinite(new_cost) and new_cost < cost and predicted > 0:
                    rho = (cost - new_cost) / predicted
                    self.vertices.update(candidate)
                    cost = new_cost
                    lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                    nu = 2.0
                    accepted = True
                    break
                lam *= nu
                nu *= 2.0
            if not accepted:
                break
        return cost


def _unpack_upper(values):
    m = np.zeros((6, 6))
    m[_UPPER] = values
    return m + m.T - np.diag(np.diag(m))


def read_g2o(path):
    """Read a pose graph; vertex 0, if present, is held fixed."""
    graph = PoseGraph()
    with Path(path).open(encoding="utf-8") as fin:
        for number, line in enumerate(fin, start=1):
            fields = line.split()
            if not fields:
                continue
            tag = fields[0]
            if tag == VERTEX_TAG:
                if len(fields) != 9:
                    raise ValueError(f"{path}:{number}: vertex needs 8 values, got {len(fields) - 1}")
                vid = int(fields[1])
                tx, ty, tz, qx, qy, qz, qw = map(float, fields[2:])
                graph.vertices[vid] = SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz))
                if vid == 0:
                    graph.fixed.add(vid)
            elif tag == EDGE_TAG:
                if len(fields) != 31:
                    raise ValueError(f"{path}:{number}: edge needs 30 values, got {len(fields) - 1}")
                source, target = int(fields[1]), int(fields[2])
                for vid in (source, target):
                    if vid not in graph.vertices:
                        raise ValueError(f"{path}:{number}: edge refers to unknown vertex {vid}")
                values = [float(v) for v in fields[3:]]
                tx, ty, tz, qx, qy, qz, qw = values[:7]
                graph.edges.append(
                    Edge(
                        source,
                        target,
                        SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)),
                        _unpack_upper(values[7:]),
                    )
                )
    return graph


def _format_pose(pose):
    w, x, y, z = pose.rotation.unit_quaternion()
    return " ".join(repr(float(v)) for v in (*pose.translation, x, y, z, w))


def write_g2o(path, graph):
    """Write the graph's vertices and edges in the ``*_SE3:QUAT`` text format."""
    with Path(path).open("w", encoding="utf-8") as fout:
        for vid, pose in graph.vertices.items():
            fout.write(f"{VERTEX_TAG} {vid} {_format_pose(pose)}\n")
        for edge in graph.edges:
            info = " ".join(repr(float(v)) for v in edge.information[_UPPER])
            fout.write(
                f"{EDGE_TAG} {edge.source} {edge.target} {_format_pose(edge.measurement)} {info}\n"
            )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Optimise an SE(3) pose graph.")
    parser.add_argument("graph", help="input graph file, e.g. sphere.g2o")
    parser.add_argument("--output", default=DEFAULT_OUTPUT)
    parser.add_argument("--iterations", type=int, default=30)
    args = parser.parse_args(argv)

    try:
        graph = read_g2o(args.graph)
    except FileNotFoundError:
        print(f"file {args.graph} does not exist.", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(f"read total {len(graph.vertices)} vertices, {len(graph.edges)} edges.")
    print("optimizing ...")
    initial = graph.total_error()
    final = graph.optimize(args.iterations)
    print(f"error: {initial} -> {final}")
    print("saving optimization results ...")
    write_g2o(args.output, graph)
    return 0