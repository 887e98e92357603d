"""
弱形式与全局装配

单元矩阵在局部基上计算，再经单元仿射映射 c = T u + offset 装配到自由度上：
    K += T^T Ke T,   F += T^T (Fe - Ke offset)
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy.sparse import coo_matrix, csr_matrix

from .dof_manager import H1Space
from .quadrature import element_points_weights, points_for_order
from .solution import ExactSolution, Solution
from .solvers import SolverConfig, SolverFactory
from .transformations import jacobian_det, map_to_physical, physical_gradients

logger = logging.getLogger(__name__)


@dataclass
class ElementValues:
    """单元积分点上的局部基函数（物理坐标）"""
    element_id: int
    x: np.ndarray        # 积分点物理坐标 (nq, 2)
    weights: np.ndarray  # 积分权重，含 |det J| (nq,)
    phi: np.ndarray      # (n_local, nq)
    grad: np.ndarray     # (n_local, nq, 2)


def element_quadrature(space: H1Space, element_id: int, extra: int = 0):
    """单元阶数对应的参考积分点与权重"""
    e = space.mesh.elements[element_id]
    order = space.get_element_order(element_id)
    return element_points_weights(e.shape, points_for_order(max(order)) + extra)


def element_values(space: H1Space, element_id: int, ref_points, ref_weights) -> ElementValues:
    """在给定参考积分点上计算局部基函数与积分权重"""
    emap = space.element_map(element_id)
    phi, dphi = space.shapeset.evaluate(emap.shape, emap.order, emap.edge_orders, ref_points)
    x, J = map_to_physical(space.mesh.element_coords(element_id), emap.shape, ref_points)
    weights = np.asarray(ref_weights) * np.abs(jacobian_det(J))
    return ElementValues(element_id, x, weights, phi, physical_gradients(dphi, J))


# ---- 常用形式 ----

def laplace_form(ev: ElementValues) -> np.ndarray:
    """∫ ∇u·∇v"""
    return np.einsum('iqd,jqd,q->ij', ev.grad, ev.grad, ev.weights)


def mass_form(ev: ElementValues) -> np.ndarray:
    """∫ u v"""
    return (ev.phi * ev.weights) @ ev.phi.T


def h1_form(ev: ElementValues) -> np.ndarray:
    """H1 内积 ∫ ∇u·∇v + u v"""
    return laplace_form(ev) + mass_form(ev)


def source_form(f: Callable) -> Callable:
    """右端项 ∫ f v，f(x, y) 接受数组"""
    def form(ev: ElementValues) -> np.ndarray:
        values = np.broadcast_to(np.asarray(f(ev.x[:, 0], ev.x[:, 1]), dtype=float),
                                 ev.weights.shape)
        return ev.phi @ (ev.weights * values)
    return form


class WeakForm:
    """双线性形式与线性形式的集合"""

    def __init__(self):
        self.matrix_forms: List[Tuple[Callable, bool]] = []
        self.vector_forms: List[Callable] = []

    def add_matrix_form(self, form: Callable, sym: bool = True):
        self.matrix_forms.append((form, sym))

    def add_vector_form(self, form: Callable):
        self.vector_forms.append(form)

    def element_matrix(self, ev: ElementValues) -> np.ndarray:
        n = ev.phi.shape[0]
        Ke = np.zeros((n, n))
        for form, sym in self.matrix_forms:
            block = form(ev)
            if sym:
                block = 0.5 * (block + block.T)
            Ke += block
        return Ke

    def element_vector(self, ev: ElementValues) -> np.ndarray:
        Fe = np.zeros(ev.phi.shape[0])
        for form in self.vector_forms:
            Fe += form(ev)
        return Fe


class _Assembler:
    """按单元仿射映射累积全局稀疏矩阵与右端项"""

    def __init__(self, n_dofs):
        self.n_dofs = n_dofs
        self.rows: List[np.ndarray] = []
        self.cols: List[np.ndarray] = []
        self.vals: List[np.ndarray] = []
        self.rhs = np.zeros(n_dofs)

    def add(self, emap, Ke, Fe):
        if len(emap.dofs) == 0:
            return
        T = emap.T
        A = T.T @ Ke @ T
        b = T.T @ (Fe - Ke @ emap.offset)
        r, c = np.meshgrid(emap.dofs, emap.dofs, indexing='ij')
        self.rows.append(r.ravel())
        self.cols.append(c.ravel())
        self.vals.append(A.ravel())
        np.add.at(self.rhs, emap.dofs, b)

    def matrix(self) -> csr_matrix:
        if not self.rows:
            return csr_matrix((self.n_dofs, self.n_dofs))
        return coo_matrix((np.concatenate(self.vals),
                           (np.concatenate(self.rows), np.concatenate(self.cols))),
                          shape=(self.n_dofs, self.n_dofs)).tocsr()


class LinearSystem:
    """
    线性系统：在空间 space 上装配并求解弱形式

    参数:
        weak_form: 弱形式
        space: H1 空间
        solver_config: 线性求解器配置（默认稀疏 LU）
    """

    def __init__(self, weak_form: WeakForm, space: H1Space,
                 solver_config: Optional[SolverConfig] = None):
        self.weak_form = weak_form
        self.space = space
        self.solver_config = solver_config or SolverConfig()
        self.matrix: Optional[csr_matrix] = None
        self.rhs: Optional[np.ndarray] = None

    def get_num_dofs(self) -> int:
        return self.space.get_num_dofs()

    def assemble(self) -> Tuple[csr_matrix, np.ndarray]:
        start = time.perf_counter()
        if self.space.is_dirty:
            self.space.assign_dofs()
        assembler = _Assembler(self.space.get_num_dofs())
        for e in self.space.mesh.active_elements():
            pts, wts = element_quadrature(self.space, e.id)
            ev = element_values(self.space, e.id, pts, wts)
            assembler.add(self.space.element_map(e.id), self.weak_form.element_matrix(ev),
                          self.weak_form.element_vector(ev))
        self.matrix = assembler.matrix()
        self.rhs = assembler.rhs
        logger.debug("装配完成: %d 个自由度, 用时 %.3f s", assembler.n_dofs,
                     time.perf_counter() - start)
        return self.matrix, self.rhs

    def solve(self) -> Solution:
        A, b = self.assemble()
        solver = SolverFactory.create_solver(self.solver_config)
        return Solution(self.space, solver.solve(A, b))

    def project_global(self, source) -> Solution:
        """把 source（Solution 或 ExactSolution）按 H1 范数投影到本空间"""
        return project_global(self.space, source, self.solver_config)


class RefSystem(LinearSystem):
    """
    参考（细）系统：网格一致细化一次，各单元阶数增加 order_increase
    """

    def __init__(self, weak_form: WeakForm, coarse_space: H1Space, order_increase: int = 1,
                 max_order: int = 10, solver_config: Optional[SolverConfig] = None):
        self.coarse_space = coarse_space
        ref_mesh = coarse_space.mesh.copy()
        ref_mesh.refine_all_elements()
        ref_space = coarse_space.dup(ref_mesh, order_increase=order_increase, max_order=max_order)
        super().__init__(weak_form, ref_space, solver_config)


def project_global(space: H1Space, source, solver_config: Optional[SolverConfig] = None) -> Solution:
    """
    H1 投影

    source 为 Solution 时，其网格可以是 space 网格的细化（单元ID一致），
    积分在 source 的活动后代单元上进行。
    """
    if space.is_dirty:
        space.assign_dofs()
    assembler = _Assembler(space.get_num_dofs())
    for e in space.mesh.active_elements():
        Ke = 0.0
        Fe = 0.0
        for ref_points, ref_weights, src_values, src_grads in _source_samples(space, e.id, source):
            ev = element_values(space, e.id, ref_points, ref_weights)
            Ke = Ke + h1_form(ev)
            Fe = Fe + ev.phi @ (ev.weights * src_values) + np.einsum(
                'iqd,qd,q->i', ev.grad, src_grads, ev.weights)
        assembler.add(space.element_map(e.id), Ke, Fe)
    solver = SolverFactory.create_solver(solver_config or SolverConfig())
    return Solution(space, solver.solve(assembler.matrix(), assembler.rhs))


def _source_samples(space, element_id, source):
    """source 在单元 element_id 内各（子）单元积分点上的值，参考点以本单元坐标给出"""
    if isinstance(source, ExactSolution):
        pts, wts = element_quadrature(space, element_id, extra=source.extra_points)
        values, grads = source.evaluate_element(element_id, pts, mesh=space.mesh)
        yield pts, wts, values, grads
        return
    e = space.mesh.elements[element_id]
    for sub_id, sub_map in source.mesh.active_descendants(element_id):
        order = max(max(space.get_element_order(element_id)),
                    max(source.space.get_element_order(sub_id)))
        pts, wts = element_points_weights(e.shape, points_for_order(order))
        values, grads = source.evaluate_element(sub_id, pts)
        yield sub_map.apply(pts), wts * abs(sub_map.det), values, grads
