"""
H1 函数空间与自由度管理

每个活动单元持有多项式阶数（四边形可各向异性）。自由度编号时：
- 共享边的阶数取相邻单元在该边方向上阶数的最小值（最小规则）
- 悬挂节点与受约束子边上的系数由主边的迹表示（任意级别）
- 本质边界上的系数由边界值确定，不计入自由度

编号结果以每个单元的仿射映射给出：局部系数 c = T @ u[dofs] + offset。
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

import numpy as np

from .basis_functions import (basis_layout, edge_direction_order, edge_trace_table,
                              make_order, shapeset as default_shapeset)
from .boundary_conditions import BCType, as_boundary_conditions
from .mesh import EdgeKey, Mesh, edge_key
from .quadrature import edge_points_weights

logger = logging.getLogger(__name__)

# 系数的仿射组合：({自由度: 权重}, 常数项)
Combo = Tuple[Dict[int, float], float]
_ZERO: Combo = ({}, 0.0)


def _scale_add(acc: Dict[int, float], const: float, combo: Combo, weight: float):
    if weight == 0.0:
        return const
    for dof, w in combo[0].items():
        acc[dof] = acc.get(dof, 0.0) + weight * w
    return const + weight * combo[1]


def _linear(items) -> Combo:
    acc: Dict[int, float] = {}
    const = 0.0
    for weight, combo in items:
        const = _scale_add(acc, const, combo, weight)
    return acc, const


@lru_cache(maxsize=None)
def _restriction_matrix(ta: float, tb: float, q: int) -> np.ndarray:
    """
    主边 [0,1] 上子区间 [ta, tb]（可反向）的迹限制矩阵

    返回 R: (q-1, q+1)，子区间上 L_2..L_q 的系数 = R @ (主边系数 [起点, 终点, L_2..L_q])
    """
    s, w = edge_points_weights(q + 2)
    t = ta + (tb - ta) * s
    local = edge_trace_table(s, q)[2:]
    master = edge_trace_table(t, q)
    f0 = edge_trace_table(np.array([ta]), q)[:, 0]
    f1 = edge_trace_table(np.array([tb]), q)[:, 0]
    residual = master - np.outer(f0, 1.0 - s) - np.outer(f1, s)
    mass = (local * w) @ local.T
    rhs = (local * w) @ residual.T
    return np.linalg.solve(mass, rhs)


def restriction_matrix(ta, tb, q):
    return _restriction_matrix(round(float(ta), 12), round(float(tb), 12), int(q))


@dataclass
class ElementMap:
    """单元局部系数与全局自由度之间的仿射关系"""
    dofs: np.ndarray       # 全局自由度编号
    T: np.ndarray          # (n_local, len(dofs))
    offset: np.ndarray     # (n_local,)，来自本质边界值
    order: Tuple[int, int]
    edge_orders: Tuple[int, ...]
    shape: str

    @property
    def num_local(self):
        return len(self.offset)

    def local_coefficients(self, u: np.ndarray) -> np.ndarray:
        if len(self.dofs) == 0:
            return self.offset.copy()
        return self.T @ u[self.dofs] + self.offset


def _inherited_order(mesh: Mesh, element_id: int, orders: Dict[int, Tuple[int, int]]):
    cur = mesh.elements[element_id]
    while cur.id not in orders:
        if cur.parent is None:
            return None
        cur = mesh.elements[cur.parent]
    return orders[cur.id]


class H1Space:
    """
    连续分片多项式空间

    参数:
        mesh: 分层网格
        bc_types: 边界标记 -> BCType（回调或映射）
        bc_values: 本质边界值 (marker, x, y) -> float（回调或映射）
        init_order: 初始阶数（整数或 (px, py)）
    """

    def __init__(self, mesh: Mesh, bc_types, bc_values=None, init_order=1,
                 orders: Optional[Dict[int, Tuple[int, int]]] = None, shapeset=None):
        self.mesh = mesh
        self.bc = as_boundary_conditions(bc_types, bc_values)
        self.bc.validate(set(mesh.boundaries.values()))
        self.shapeset = shapeset or default_shapeset
        self._orders: Dict[int, Tuple[int, int]] = {}
        if orders is not None:
            self._orders.update(orders)
        for e in mesh.active_elements():
            if _inherited_order(mesh, e.id, self._orders) is None:
                self._orders[e.id] = make_order(init_order, e.shape)

        self._element_maps: Dict[int, ElementMap] = {}
        self._edge_orders: Dict[EdgeKey, int] = {}
        self._n_dofs = 0
        self._dirty = True
        self.assign_dofs()

    # ---- 阶数 ----

    def get_element_order(self, element_id: int) -> Tuple[int, int]:
        """单元阶数；新细化的子单元继承祖先的阶数"""
        order = _inherited_order(self.mesh, element_id, self._orders)
        if order is None:
            raise ValueError(f"单元 {element_id} 没有阶数")
        return order

    def set_order(self, element_id: int, order):
        e = self.mesh.get_element(element_id)
        self._orders[element_id] = make_order(order, e.shape)
        self._dirty = True

    def element_orders(self) -> Dict[int, Tuple[int, int]]:
        return {e.id: self.get_element_order(e.id) for e in self.mesh.active_elements()}

    def mark_dirty(self):
        """网格拓扑改变后调用（细化、阶数修改）"""
        self._dirty = True

    @property
    def is_dirty(self):
        return self._dirty

    # ---- 自由度 ----

    def get_num_dofs(self) -> int:
        if self._dirty:
            raise RuntimeError("空间已修改，需先调用 assign_dofs() 重新编号")
        return self._n_dofs

    dof_count = get_num_dofs

    def element_map(self, element_id: int) -> ElementMap:
        if self._dirty:
            raise RuntimeError("空间已修改，需先调用 assign_dofs() 重新编号")
        try:
            return self._element_maps[element_id]
        except KeyError:
            raise ValueError(f"单元 {element_id} 不是活动单元") from None

    def edge_order(self, key: EdgeKey) -> int:
        return self._edge_orders[key]

    def assign_dofs(self) -> int:
        """按最小规则与悬挂节点约束重新编号，返回自由度数"""
        mesh = self.mesh
        active = mesh.active_elements()
        orders = {e.id: make_order(self.get_element_order(e.id), e.shape) for e in active}

        # 主边及其阶数
        edge_info: Dict[int, List[Tuple[int, int, EdgeKey]]] = {}
        master_order: Dict[EdgeKey, int] = {}
        for e in active:
            info = []
            for i in range(len(e.vertices)):
                a, b = e.edge_vertices(i)
                master, _ = mesh.edge_master(edge_key(a, b))
                q = edge_direction_order(orders[e.id], e.shape, i)
                master_order[master] = min(master_order.get(master, q), q)
                info.append((a, b, master))
            edge_info[e.id] = info

        # 本质边界顶点
        dirichlet_vertex: Dict[int, int] = {}
        for e in active:
            for a, b, master in edge_info[e.id]:
                key = edge_key(a, b)
                marker = mesh.boundary_marker(key)
                if marker is not None and self.bc.classify(marker) == BCType.ESSENTIAL:
                    dirichlet_vertex.setdefault(a, marker)
                    dirichlet_vertex.setdefault(b, marker)

        counter = [0]

        def new_dof() -> Combo:
            dof = counter[0]
            counter[0] += 1
            return {dof: 1.0}, 0.0

        vertex_combo: Dict[int, Combo] = {}
        hanging: Dict[int, EdgeKey] = {}
        edge_combo: Dict[EdgeKey, List[Combo]] = {}
        bubble_combo: Dict[int, List[Combo]] = {}

        def number_vertex(v):
            if v in vertex_combo or v in hanging:
                return
            master = mesh.hanging_master(v)
            if master is not None:
                hanging[v] = master
            elif v in dirichlet_vertex:
                x, y = mesh.vertices[v]
                vertex_combo[v] = ({}, float(self.bc.value(dirichlet_vertex[v], x, y)[0]))
            else:
                vertex_combo[v] = new_dof()

        pending_dirichlet_edges = []

        def number_edge(master):
            if master in edge_combo:
                return
            q = master_order[master]
            marker = mesh.boundary_marker(master)
            if marker is not None and self.bc.classify(marker) == BCType.ESSENTIAL:
                edge_combo[master] = []
                pending_dirichlet_edges.append((master, marker))
            else:
                edge_combo[master] = [new_dof() for _ in range(2, q + 1)]

        for e in active:
            for v in e.vertices:
                number_vertex(v)
            for a, b, master in edge_info[e.id]:
                number_vertex(master[0])
                number_vertex(master[1])
                number_edge(master)
            n_bubble = len(basis_layout(e.shape, orders[e.id], (1,) * len(e.vertices)).bubble)
            bubble_combo[e.id] = [new_dof() for _ in range(n_bubble)]

        def resolve(v) -> Combo:
            combo = vertex_combo.get(v)
            if combo is not None:
                return combo
            master = hanging[v]
            number_vertex(master[0])
            number_vertex(master[1])
            number_edge(master)
            combo = self._trace_combo(master, mesh.edge_parameter(master, v), resolve,
                                      edge_combo[master], master_order[master])
            vertex_combo[v] = combo
            return combo

        for master, marker in pending_dirichlet_edges:
            edge_combo[master] = self._dirichlet_edge(master, marker, master_order[master],
                                                      resolve(master[0])[1], resolve(master[1])[1])

        self._n_dofs = counter[0]
        self._edge_orders = master_order
        self._element_maps = {}
        for e in active:
            self._element_maps[e.id] = self._build_element_map(
                e, orders[e.id], edge_info[e.id], master_order, resolve, edge_combo,
                bubble_combo[e.id])

        self._dirty = False
        logger.debug("自由度编号完成: %d 个自由度, %d 个活动单元, %d 个悬挂节点",
                     self._n_dofs, len(active), len(hanging))
        return self._n_dofs

    def _trace_combo(self, master, t, resolve, combos, q) -> Combo:
        values = edge_trace_table(np.array([t]), q)[:, 0]
        items = [(values[0], resolve(master[0])), (values[1], resolve(master[1]))]
        items += [(values[k], combos[k - 2]) for k in range(2, len(combos) + 2)]
        return _linear(items)

    def _dirichlet_edge(self, key, marker, q, value_a, value_b) -> List[Combo]:
        """边界值减去线性插值后在 L_2..L_q 上的 L2 投影"""
        if q < 2:
            return []
        s, w = edge_points_weights(q + 6)
        a = self.mesh.vertices[key[0]]
        b = self.mesh.vertices[key[1]]
        pts = np.outer(1.0 - s, a) + np.outer(s, b)
        g = self.bc.value(marker, pts[:, 0], pts[:, 1])
        residual = g - (1.0 - s) * value_a - s * value_b
        L = edge_trace_table(s, q)[2:]
        mass = (L * w) @ L.T
        coeffs = np.linalg.solve(mass, (L * w) @ residual)
        return [({}, float(c)) for c in coeffs]

    def _build_element_map(self, e, order, info, master_order, resolve, edge_combo, bubbles):
        edge_orders = tuple(master_order[master] for _, _, master in info)
        layout = basis_layout(e.shape, order, edge_orders)
        rows: List[Combo] = [_ZERO] * layout.size

        for j, v in enumerate(e.vertices):
            rows[layout.vertex[j]] = resolve(v)

        for i, (a, b, master) in enumerate(info):
            q = edge_orders[i]
            if q < 2:
                continue
            if master == edge_key(a, b):
                ta, tb = (0.0, 1.0) if a == master[0] else (1.0, 0.0)
            else:
                ta = self.mesh.edge_parameter(master, a)
                tb = self.mesh.edge_parameter(master, b)
            R = restriction_matrix(ta, tb, q)
            source = [resolve(master[0]), resolve(master[1])] + edge_combo[master]
            for r, idx in enumerate(layout.edge[i]):
                rows[idx] = _linear((R[r, c], source[c]) for c in range(q + 1)
                                    if abs(R[r, c]) > 1e-13)

        for idx, combo in zip(layout.bubble, bubbles):
            rows[idx] = combo

        dofs = sorted({dof for combo in rows for dof in combo[0]})
        column = {dof: j for j, dof in enumerate(dofs)}
        T = np.zeros((len(rows), len(dofs)))
        offset = np.zeros(len(rows))
        for r, (weights, const) in enumerate(rows):
            for dof, w in weights.items():
                T[r, column[dof]] = w
            offset[r] = const
        return ElementMap(np.array(dofs, dtype=int), T, offset, order, edge_orders, e.shape)

    # ---- 复制 ----

    def dup(self, mesh: Mesh, order_increase: int = 0, max_order: Optional[int] = None) -> 'H1Space':
        """
        在另一网格（通常为本网格的细化副本）上构造空间，阶数继承自对应的祖先单元并增加 order_increase
        """
        orders = {}
        for e in mesh.active_elements():
            base = _inherited_order(mesh, e.id, self._orders)
            if base is None:
                raise ValueError(f"网格单元 {e.id} 在原空间中没有对应的祖先")
            px, py = base[0] + order_increase, base[1] + order_increase
            if max_order is not None:
                px, py = min(px, max_order), min(py, max_order)
            orders[e.id] = make_order((px, py), e.shape)
        return H1Space(mesh, self.bc, orders=orders, shapeset=self.shapeset)
