"""
测试公共夹具：小网格与常用边界条件
"""

import numpy as np
import pytest

from hpfem.finite_elements.assembly import WeakForm, laplace_form
from hpfem.finite_elements.mesh_io import build_mesh


def square_mesh(max_regularity=-1):
    """单位正方形，一个四边形单元"""
    data = {
        'vertices': [[0, 0], [1, 0], [1, 1], [0, 1]],
        'elements': [[0, 1, 2, 3, 0]],
        'boundaries': [[0, 1, 1], [1, 2, 1], [2, 3, 1], [3, 0, 1]],
    }
    return build_mesh(data, max_regularity=max_regularity)


def two_quad_mesh(max_regularity=-1):
    """[0,2]x[0,1]，两个四边形单元，共享边 (1, 4)"""
    data = {
        'vertices': [[0, 0], [1, 0], [2, 0], [0, 1], [1, 1], [2, 1]],
        'elements': [[0, 1, 4, 3, 0], [1, 2, 5, 4, 0]],
        'boundaries': [[0, 1, 1], [1, 2, 1], [2, 5, 2], [5, 4, 3], [4, 3, 3], [3, 0, 4]],
    }
    return build_mesh(data, max_regularity=max_regularity)


def triangle_mesh(max_regularity=-1):
    """单位正方形，两个三角形单元"""
    data = {
        'vertices': [[0, 0], [1, 0], [1, 1], [0, 1]],
        'elements': [[0, 1, 2, 0], [0, 2, 3, 0]],
        'boundaries': [[0, 1, 1], [1, 2, 1], [2, 3, 1], [3, 0, 1]],
    }
    return build_mesh(data, max_regularity=max_regularity)


def natural(marker):
    return 'natural'


def essential(marker):
    return 'essential'


def values_of(fn):
    """把 (x, y) -> u 包装为边界值回调"""
    return lambda marker, x, y: fn(x, y)


def laplace():
    wf = WeakForm()
    wf.add_matrix_form(laplace_form)
    return wf


def harmonic_quadratic(x, y):
    return x ** 2 - y ** 2


def harmonic_quadratic_grad(x, y):
    return 2.0 * np.asarray(x, dtype=float), -2.0 * np.asarray(y, dtype=float)


def smooth(x, y):
    return np.exp(x) * np.sin(y)


def smooth_grad(x, y):
    return np.exp(x) * np.sin(y), np.exp(x) * np.cos(y)


@pytest.fixture
def square():
    return square_mesh()


@pytest.fixture
def two_quads():
    return two_quad_mesh()


@pytest.fixture
def triangles():
    return triangle_mesh()
