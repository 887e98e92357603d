"""
分层 H1 基函数（Lobatto 形函数集）

支持参考正方形 [-1,1]^2 上的四边形单元（各向异性阶数 (px, py)）和
参考三角形 (-1,-1), (1,-1), (-1,1) 上的三角形单元（各向同性阶数 p）。
局部基函数排列顺序：顶点函数、各条边的边函数（k = 2..q_edge）、泡函数。

两种单元在边上的迹一致：起点顶点函数为 1 - s，终点顶点函数为 s，
第 k 个边函数为 L_k(s) = l_k(2s - 1)。
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

TRIANGLE = 'triangle'
QUADRILATERAL = 'quad'

# 局部边：(起点, 终点)，参数方向沿参考坐标轴正向
QUAD_EDGES = ((0, 1), (1, 2), (3, 2), (0, 3))
TRIANGLE_EDGES = ((0, 1), (1, 2), (0, 2))

# 四边形第 i 条边所沿的参考方向（0 -> xi, 1 -> eta）
QUAD_EDGE_DIRECTION = (0, 1, 0, 1)

# 四边形顶点函数在 xi / eta 方向使用的 Lobatto 指标
_QUAD_VERTEX_INDEX = ((0, 0), (1, 0), (1, 1), (0, 1))

_TRI_LAMBDA_GRAD = np.array([[-0.5, -0.5], [0.5, 0.0], [0.0, 0.5]])


def shape_of(n_vertices):
    if n_vertices == 3:
        return TRIANGLE
    elif n_vertices == 4:
        return QUADRILATERAL
    raise ValueError(f"不支持的单元顶点数: {n_vertices}")


def local_edges(shape):
    return QUAD_EDGES if shape == QUADRILATERAL else TRIANGLE_EDGES


def make_order(order, shape=QUADRILATERAL) -> Tuple[int, int]:
    """把整数或元组阶数规范为 (px, py)；三角形取各向同性阶数"""
    if isinstance(order, (tuple, list)):
        px, py = int(order[0]), int(order[1])
    else:
        px = py = int(order)
    if shape == TRIANGLE:
        px = py = max(px, py)
    if px < 1 or py < 1:
        raise ValueError(f"多项式阶数必须 >= 1: {order}")
    return px, py


def edge_direction_order(order, shape, edge):
    """单元在第 edge 条边方向上的阶数"""
    if shape == TRIANGLE:
        return order[0]
    return order[QUAD_EDGE_DIRECTION[edge]]


# ---- 一维多项式 ----

def legendre_table(x, n):
    """Legendre 多项式 P_0..P_n 及其一阶、二阶导数，形状 (n+1, len(x))"""
    x = np.asarray(x, dtype=float)
    P = np.zeros((n + 1,) + x.shape)
    dP = np.zeros_like(P)
    d2P = np.zeros_like(P)
    P[0] = 1.0
    if n >= 1:
        P[1] = x
        dP[1] = 1.0
    for k in range(1, n):
        P[k + 1] = ((2 * k + 1) * x * P[k] - k * P[k - 1]) / (k + 1)
        dP[k + 1] = dP[k - 1] + (2 * k + 1) * P[k]
        d2P[k + 1] = d2P[k - 1] + (2 * k + 1) * dP[k]
    return P, dP, d2P


def lobatto_table(x, n):
    """Lobatto 形函数 l_0..l_n 及导数，形状 (n+1, len(x))"""
    x = np.asarray(x, dtype=float)
    n = max(n, 1)
    P, _, _ = legendre_table(x, n)
    L = np.zeros((n + 1,) + x.shape)
    dL = np.zeros_like(L)
    L[0] = (1.0 - x) / 2.0
    L[1] = (1.0 + x) / 2.0
    dL[0] = -0.5
    dL[1] = 0.5
    for k in range(2, n + 1):
        L[k] = (P[k] - P[k - 2]) / np.sqrt(2.0 * (2 * k - 1))
        dL[k] = np.sqrt((2 * k - 1) / 2.0) * P[k - 1]
    return L, dL


def edge_trace_table(s, n):
    """边参数 s ∈ [0,1] 上的迹函数 1-s, s, L_2..L_n，形状 (n+1, len(s))"""
    L, _ = lobatto_table(2.0 * np.asarray(s, dtype=float) - 1.0, n)
    return L


def _kernel_coefficient(k):
    # l_k(x) = l_0(x) l_1(x) kappa_{k-2}(x), kappa_{k-2} = C_k P'_{k-1}
    return -4.0 * np.sqrt((2 * k - 1) / 2.0) / (k * (k - 1))


@dataclass(frozen=True)
class BasisLayout:
    """局部基函数的分组索引"""
    vertex: Tuple[int, ...]
    edge: Tuple[Tuple[int, ...], ...]
    bubble: Tuple[int, ...]

    @property
    def size(self):
        return len(self.vertex) + sum(len(e) for e in self.edge) + len(self.bubble)


def basis_layout(shape, order, edge_orders) -> BasisLayout:
    n_v = 3 if shape == TRIANGLE else 4
    idx = n_v
    edges = []
    for q in edge_orders:
        n_e = max(q - 1, 0)
        edges.append(tuple(range(idx, idx + n_e)))
        idx += n_e
    if shape == TRIANGLE:
        p = order[0]
        n_b = max((p - 1) * (p - 2) // 2, 0)
    else:
        n_b = max(order[0] - 1, 0) * max(order[1] - 1, 0)
    return BasisLayout(tuple(range(n_v)), tuple(edges), tuple(range(idx, idx + n_b)))


def num_shapes(shape, order):
    """阶数为 order 的完整局部空间维数（边阶数等于单元阶数）"""
    order = make_order(order, shape)
    if shape == TRIANGLE:
        p = order[0]
        return (p + 1) * (p + 2) // 2
    return (order[0] + 1) * (order[1] + 1)


_CACHE_LIMIT = 4096


class H1Shapeset:
    """分层 H1 形函数集，带按 (形状, 阶数, 边阶数, 积分点) 的缓存"""

    def __init__(self):
        self._cache: Dict[tuple, Tuple[np.ndarray, np.ndarray]] = {}

    def full_edge_orders(self, shape, order):
        order = make_order(order, shape)
        n_e = 3 if shape == TRIANGLE else 4
        return tuple(edge_direction_order(order, shape, i) for i in range(n_e))

    def evaluate(self, shape, order, edge_orders, ref_points):
        """
        计算局部基函数在参考点上的值与参考梯度

        返回:
            phi:  (n_local, n_points)
            dphi: (n_local, n_points, 2)
        """
        order = make_order(order, shape)
        edge_orders = tuple(int(q) for q in edge_orders)
        ref_points = np.ascontiguousarray(ref_points, dtype=float)
        key = (shape, order, edge_orders, ref_points.shape, ref_points.tobytes())
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if shape == QUADRILATERAL:
            result = self._evaluate_quad(order, edge_orders, ref_points)
        elif shape == TRIANGLE:
            result = self._evaluate_triangle(order, edge_orders, ref_points)
        else:
            raise ValueError(f"不支持的单元类型: {shape}")
        for arr in result:
            arr.setflags(write=False)
        if len(self._cache) >= _CACHE_LIMIT:
            self._cache.clear()
        self._cache[key] = result
        return result

    def _evaluate_quad(self, order, edge_orders, pts):
        px, py = order
        q0, q1, q2, q3 = edge_orders
        Lx, dLx = lobatto_table(pts[:, 0], max(px, q0, q2))
        Ly, dLy = lobatto_table(pts[:, 1], max(py, q1, q3))

        pairs: List[Tuple[int, int]] = list(_QUAD_VERTEX_INDEX)
        pairs += [(k, 0) for k in range(2, q0 + 1)]
        pairs += [(1, k) for k in range(2, q1 + 1)]
        pairs += [(k, 1) for k in range(2, q2 + 1)]
        pairs += [(0, k) for k in range(2, q3 + 1)]
        pairs += [(i, j) for i in range(2, px + 1) for j in range(2, py + 1)]

        ii = np.array([p[0] for p in pairs])
        jj = np.array([p[1] for p in pairs])
        phi = Lx[ii] * Ly[jj]
        dphi = np.stack([dLx[ii] * Ly[jj], Lx[ii] * dLy[jj]], axis=-1)
        return phi, dphi

    def _evaluate_triangle(self, order, edge_orders, pts):
        p = order[0]
        xi, eta = pts[:, 0], pts[:, 1]
        lam = np.array([-(xi + eta) / 2.0, (1.0 + xi) / 2.0, (1.0 + eta) / 2.0])
        glam = _TRI_LAMBDA_GRAD
        n_pts = pts.shape[0]
        phi = [lam[0], lam[1], lam[2]]
        dphi = [np.tile(glam[a], (n_pts, 1)) for a in range(3)]

        max_q = max(edge_orders + (2,))
        for (a, b), q in zip(TRIANGLE_EDGES, edge_orders):
            if q < 2:
                continue
            t = lam[b] - lam[a]
            _, dP, d2P = legendre_table(t, max_q)
            prod = lam[a] * lam[b]
            gprod = np.outer(lam[b], glam[a]) + np.outer(lam[a], glam[b])
            gt = glam[b] - glam[a]
            for k in range(2, q + 1):
                c = _kernel_coefficient(k)
                kappa = c * dP[k - 1]
                dkappa = c * d2P[k - 1]
                phi.append(prod * kappa)
                dphi.append(gprod * kappa[:, None] + np.outer(prod * dkappa, gt))

        if p >= 3:
            s1 = lam[1] - lam[0]
            s2 = lam[2] - lam[0]
            P1, dP1, _ = legendre_table(s1, p - 3)
            P2, dP2, _ = legendre_table(s2, p - 3)
            bub = lam[0] * lam[1] * lam[2]
            gbub = (np.outer(lam[1] * lam[2], glam[0]) + np.outer(lam[0] * lam[2], glam[1])
                    + np.outer(lam[0] * lam[1], glam[2]))
            gs1 = glam[1] - glam[0]
            gs2 = glam[2] - glam[0]
            for i in range(0, p - 2):
                for j in range(0, p - 2 - i):
                    f = P1[i] * P2[j]
                    phi.append(bub * f)
                    df = np.outer(dP1[i] * P2[j], gs1) + np.outer(P1[i] * dP2[j], gs2)
                    dphi.append(gbub * f[:, None] + bub[:, None] * df)

        return np.array(phi), np.array(dphi)


# 模块级共享实例
shapeset = H1Shapeset()
