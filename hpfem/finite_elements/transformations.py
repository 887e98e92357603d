"""
参考单元到物理单元的变换、Jacobi矩阵与子单元仿射映射
"""
from dataclasses import dataclass

import numpy as np

from .basis_functions import TRIANGLE, lobatto_table

_TRI_LAMBDA_GRAD = np.array([[-0.5, -0.5], [0.5, 0.0], [0.0, 0.5]])
_QUAD_VERTEX_INDEX = ((0, 0), (1, 0), (1, 1), (0, 1))


def geometry_shape_functions(shape, ref_points):
    """
    几何形函数（四边形双线性、三角形线性）
    返回 N: (n_vertices, n_points), dN: (n_vertices, n_points, 2)
    """
    ref_points = np.asarray(ref_points, dtype=float)
    xi, eta = ref_points[:, 0], ref_points[:, 1]
    if shape == TRIANGLE:
        N = np.array([-(xi + eta) / 2.0, (1.0 + xi) / 2.0, (1.0 + eta) / 2.0])
        dN = np.broadcast_to(_TRI_LAMBDA_GRAD[:, None, :], (3, len(xi), 2))
        return N, dN
    Lx, dLx = lobatto_table(xi, 1)
    Ly, dLy = lobatto_table(eta, 1)
    N = np.array([Lx[a] * Ly[b] for a, b in _QUAD_VERTEX_INDEX])
    dN = np.array([np.stack([dLx[a] * Ly[b], Lx[a] * dLy[b]], axis=-1)
                   for a, b in _QUAD_VERTEX_INDEX])
    return N, dN


def jacobian_matrix(node_coords, dN):
    """
    计算各积分点的 Jacobi 矩阵 J[q] = d(x, y) / d(xi, eta)
    node_coords: (n_vertices, 2)
    dN: (n_vertices, n_points, 2)
    返回 J: (n_points, 2, 2)
    """
    return np.einsum('vi,vqj->qij', node_coords, dN)


def jacobian_det(J):
    """Jacobi行列式"""
    return J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]


def jacobian_inv(J):
    """Jacobi逆矩阵"""
    det = jacobian_det(J)
    inv = np.empty_like(J)
    inv[:, 0, 0] = J[:, 1, 1] / det
    inv[:, 1, 1] = J[:, 0, 0] / det
    inv[:, 0, 1] = -J[:, 0, 1] / det
    inv[:, 1, 0] = -J[:, 1, 0] / det
    return inv


def dN_dx(dN_dxi, J_inv):
    """
    基函数对物理坐标的导数
    dN_dxi: (n_functions, n_points, 2)
    J_inv: (n_points, 2, 2)
    返回 (n_functions, n_points, 2)
    """
    return np.einsum('qji,nqj->nqi', J_inv, dN_dxi)


def physical_gradients(dphi, J):
    """参考梯度 -> 物理梯度"""
    return dN_dx(dphi, jacobian_inv(J))


def map_to_physical(node_coords, shape, ref_points):
    """参考点映射到物理坐标，同时返回 Jacobi 矩阵"""
    N, dN = geometry_shape_functions(shape, ref_points)
    x = N.T @ np.asarray(node_coords, dtype=float)
    J = jacobian_matrix(np.asarray(node_coords, dtype=float), dN)
    return x, J


@dataclass(frozen=True)
class AffineMap:
    """参考坐标之间的仿射映射 p_parent = A @ p_child + b"""
    A: tuple = ((1.0, 0.0), (0.0, 1.0))
    b: tuple = (0.0, 0.0)

    @classmethod
    def from_corners(cls, c0, c1, c2):
        """
        由子单元三个角点在父单元参考坐标下的位置构造映射
        c0 对应 (-1,-1)，c1 对应 (1,-1)，c2 对应 (-1,1)
        """
        c0, c1, c2 = (np.asarray(c, dtype=float) for c in (c0, c1, c2))
        A = np.column_stack([(c1 - c0) / 2.0, (c2 - c0) / 2.0])
        b = c0 + A @ np.array([1.0, 1.0])
        return cls(tuple(map(tuple, A)), tuple(b))

    @property
    def matrix(self):
        return np.array(self.A)

    @property
    def offset(self):
        return np.array(self.b)

    @property
    def det(self):
        (a, b), (c, d) = self.A
        return a * d - b * c

    def apply(self, points):
        points = np.atleast_2d(np.asarray(points, dtype=float))
        return points @ self.matrix.T + self.offset

    def then(self, outer: 'AffineMap') -> 'AffineMap':
        """先应用 self，再应用 outer"""
        A = outer.matrix @ self.matrix
        b = outer.matrix @ self.offset + outer.offset
        return AffineMap(tuple(map(tuple, A)), tuple(b))

    def inverse(self) -> 'AffineMap':
        A_inv = np.linalg.inv(self.matrix)
        b = -A_inv @ self.offset
        return AffineMap(tuple(map(tuple, A_inv)), tuple(b))

    @property
    def is_identity(self):
        return np.allclose(self.matrix, np.eye(2)) and np.allclose(self.offset, 0.0)


IDENTITY_MAP = AffineMap()
