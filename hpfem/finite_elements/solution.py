"""
有限元解与解析解

两者都提供 evaluate_element(element_id, ref_points)，返回单元参考点上的函数值与物理梯度，
因此范数、误差与投影可以统一处理。
"""

from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .quadrature import element_points_weights, points_for_order
from .transformations import jacobian_det, map_to_physical, physical_gradients


class Solution:
    """空间 space 上系数向量为 coefficients 的有限元函数"""

    def __init__(self, space, coefficients: np.ndarray):
        self.space = space
        self.mesh = space.mesh
        self.coefficients = np.asarray(coefficients, dtype=float)
        n_dofs = space.get_num_dofs()
        if self.coefficients.shape != (n_dofs,):
            raise ValueError(f"系数长度 {self.coefficients.shape} 与自由度数 {n_dofs} 不符")
        self._local: Dict[int, np.ndarray] = {}

    @property
    def num_dofs(self):
        return len(self.coefficients)

    def local_coefficients(self, element_id: int) -> np.ndarray:
        c = self._local.get(element_id)
        if c is None:
            c = self.space.element_map(element_id).local_coefficients(self.coefficients)
            self._local[element_id] = c
        return c

    def evaluate_element(self, element_id: int, ref_points) -> Tuple[np.ndarray, np.ndarray]:
        """返回 (values (nq,), gradients (nq, 2))"""
        emap = self.space.element_map(element_id)
        phi, dphi = self.space.shapeset.evaluate(emap.shape, emap.order, emap.edge_orders, ref_points)
        _, J = map_to_physical(self.mesh.element_coords(element_id), emap.shape, ref_points)
        grads = physical_gradients(dphi, J)
        c = self.local_coefficients(element_id)
        return c @ phi, np.einsum('n,nqd->qd', c, grads)

    def quadrature_points(self, element_id: int) -> int:
        return points_for_order(max(self.space.get_element_order(element_id)) + 1)

    def __call__(self, x: float, y: float) -> float:
        """点值（逐单元求参考坐标，仅用于检查与绘图）"""
        point = np.array([x, y], dtype=float)
        for e in self.mesh.active_elements():
            ref = _inverse_map(self.mesh.element_coords(e.id), e.shape, point)
            if ref is not None:
                return float(self.evaluate_element(e.id, ref[None, :])[0][0])
        raise ValueError(f"点 ({x}, {y}) 不在网格内")


class ExactSolution:
    """
    解析解

    参数:
        mesh: 计算区域网格
        value: (x, y) -> u，接受数组
        gradient: (x, y) -> (u_x, u_y)，接受数组
    """

    def __init__(self, mesh, value: Callable, gradient: Callable, extra_points: int = 3):
        self.mesh = mesh
        self.value = value
        self.gradient = gradient
        self.extra_points = extra_points

    def evaluate_element(self, element_id: int, ref_points, mesh=None) -> Tuple[np.ndarray, np.ndarray]:
        mesh = mesh or self.mesh
        e = mesh.elements[element_id]
        x, _ = map_to_physical(mesh.element_coords(element_id), e.shape, ref_points)
        return self.evaluate_points(x)

    def evaluate_points(self, x) -> Tuple[np.ndarray, np.ndarray]:
        x = np.atleast_2d(np.asarray(x, dtype=float))
        n = len(x)
        values = np.broadcast_to(np.asarray(self.value(x[:, 0], x[:, 1]), dtype=float), (n,))
        gx, gy = self.gradient(x[:, 0], x[:, 1])
        grads = np.column_stack([np.broadcast_to(gx, (n,)), np.broadcast_to(gy, (n,))])
        return values.copy(), grads.astype(float)

    def __call__(self, x, y):
        return self.value(x, y)


def _inverse_map(coords, shape, point, tol=1e-10):
    """Newton 迭代求物理点的参考坐标，点不在单元内时返回 None"""
    ref = np.zeros(2) if shape == 'quad' else np.array([-1.0 / 3.0, -1.0 / 3.0])
    for _ in range(20):
        x, J = map_to_physical(coords, shape, ref[None, :])
        residual = point - x[0]
        if np.linalg.norm(residual) < tol:
            break
        ref = ref + np.linalg.solve(J[0], residual)
    eps = 1e-9
    if shape == 'quad':
        inside = np.all(np.abs(ref) <= 1.0 + eps)
    else:
        inside = ref[0] >= -1.0 - eps and ref[1] >= -1.0 - eps and ref[0] + ref[1] <= eps
    return ref if inside else None


def _evaluate(fn, mesh, element_id, pts):
    if isinstance(fn, ExactSolution):
        return fn.evaluate_element(element_id, pts, mesh=mesh)
    return fn.evaluate_element(element_id, pts)


def _element_h1_squared(fn_a, fn_b, mesh, element_id, n_points):
    e = mesh.elements[element_id]
    pts, wts = element_points_weights(e.shape, n_points)
    _, J = map_to_physical(mesh.element_coords(element_id), e.shape, pts)
    w = wts * np.abs(jacobian_det(J))
    va, ga = _evaluate(fn_a, mesh, element_id, pts)
    if fn_b is None:
        dv, dg = va, ga
    else:
        vb, gb = _evaluate(fn_b, mesh, element_id, pts)
        dv, dg = va - vb, ga - gb
    return float(np.sum(w * (dv ** 2 + np.sum(dg ** 2, axis=1))))


def calc_h1_norm(fn, n_points: Optional[int] = None) -> float:
    """H1 范数，在 fn 所在网格的活动单元上积分"""
    mesh = fn.mesh
    total = 0.0
    for e in mesh.active_elements():
        n = n_points or _points_for(fn, e.id)
        total += _element_h1_squared(fn, None, mesh, e.id, n)
    return np.sqrt(total)


def calc_rel_h1_error(approx: Solution, exact, n_points: Optional[int] = None) -> float:
    """相对 H1 误差 |approx - exact| / |exact|，在 approx 的网格上积分"""
    mesh = approx.mesh
    err = 0.0
    norm = 0.0
    for e in mesh.active_elements():
        n = n_points or _points_for(approx, e.id) + getattr(exact, 'extra_points', 0)
        err += _element_h1_squared(approx, exact, mesh, e.id, n)
        norm += _element_h1_squared(exact, None, mesh, e.id, n)
    if norm == 0.0:
        return np.sqrt(err)
    return np.sqrt(err / norm)


def _points_for(fn, element_id):
    if isinstance(fn, Solution):
        return fn.quadrature_points(element_id)
    return points_for_order(2) + getattr(fn, 'extra_points', 0)
