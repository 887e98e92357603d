"""
高斯积分模块：1D / 四边形张量积 / 三角形塌缩（Duffy）积分，任意阶
"""
from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss


@lru_cache(maxsize=None)
def gauss_legendre_1d(n_points):
    """[-1, 1] 上的 Gauss-Legendre 积分点和权重"""
    if n_points < 1:
        raise ValueError(f"积分点数必须为正: {n_points}")
    pts, wts = leggauss(n_points)
    pts.setflags(write=False)
    wts.setflags(write=False)
    return pts, wts


def edge_points_weights(n_points):
    """[0, 1] 上的积分点和权重（用于边）"""
    pts, wts = gauss_legendre_1d(n_points)
    return 0.5 * (pts + 1.0), 0.5 * wts


@lru_cache(maxsize=None)
def quad_points_weights(n_points):
    """参考正方形 [-1,1]^2 上的张量积积分"""
    pts_1d, wts_1d = gauss_legendre_1d(n_points)
    pts = np.array([[x, y] for x in pts_1d for y in pts_1d])
    wts = np.array([wx * wy for wx in wts_1d for wy in wts_1d])
    pts.setflags(write=False)
    wts.setflags(write=False)
    return pts, wts


@lru_cache(maxsize=None)
def triangle_points_weights(n_points):
    """
    参考三角形 (-1,-1), (1,-1), (-1,1) 上的塌缩积分

    由正方形上的张量积规则经 Duffy 变换得到:
        xi = (1 + u)(1 - v)/2 - 1,  eta = v,  |J| = (1 - v)/2
    """
    pts_1d, wts_1d = gauss_legendre_1d(n_points + 1)
    pts = []
    wts = []
    for u, wu in zip(pts_1d, wts_1d):
        for v, wv in zip(pts_1d, wts_1d):
            pts.append([(1.0 + u) * (1.0 - v) / 2.0 - 1.0, v])
            wts.append(wu * wv * (1.0 - v) / 2.0)
    pts = np.array(pts)
    wts = np.array(wts)
    pts.setflags(write=False)
    wts.setflags(write=False)
    return pts, wts


def element_points_weights(shape, n_points):
    """按单元形状选择积分规则"""
    if shape == 'quad':
        return quad_points_weights(n_points)
    elif shape == 'triangle':
        return triangle_points_weights(n_points)
    raise ValueError(f"不支持的单元类型: {shape}")


def points_for_order(order):
    """阶数为 order 的多项式乘积（含一阶几何）所需的一维积分点数"""
    return int(order) + 2
