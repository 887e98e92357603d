"""
有限元基础模块测试：基函数、积分、变换
"""

import numpy as np
import pytest

from hpfem.finite_elements.basis_functions import (
    QUADRILATERAL,
    TRIANGLE,
    H1Shapeset,
    basis_layout,
    edge_trace_table,
    make_order,
    num_shapes,
)
from hpfem.finite_elements.quadrature import element_points_weights, gauss_legendre_1d
from hpfem.finite_elements.transformations import AffineMap, jacobian_det, map_to_physical


class TestH1Shapeset:
    """分层基函数测试"""

    def test_quadrilateral_vertex_functions(self):
        """测试四边形顶点函数在顶点处的值"""
        shapeset = H1Shapeset()
        nodes = np.array([[-1, -1], [1, -1], [1, 1], [-1, 1]], dtype=float)
        phi, _ = shapeset.evaluate(QUADRILATERAL, (1, 1), (1, 1, 1, 1), nodes)

        np.testing.assert_allclose(phi, np.eye(4), atol=1e-12)

    def test_triangle_vertex_functions(self):
        """测试三角形顶点函数在顶点处的值"""
        shapeset = H1Shapeset()
        nodes = np.array([[-1, -1], [1, -1], [-1, 1]], dtype=float)
        phi, _ = shapeset.evaluate(TRIANGLE, 1, (1, 1, 1), nodes)

        np.testing.assert_allclose(phi, np.eye(3), atol=1e-12)

    def test_partition_of_unity(self):
        """测试顶点函数的单位分解性质"""
        shapeset = H1Shapeset()
        pts = np.array([[0.2, -0.3], [-0.7, 0.1]])
        phi, _ = shapeset.evaluate(QUADRILATERAL, (3, 2), (3, 2, 3, 2), pts)
        np.testing.assert_allclose(phi[:4].sum(axis=0), 1.0, atol=1e-12)

        pts = np.array([[-0.3, -0.4], [0.1, -0.6]])
        phi, _ = shapeset.evaluate(TRIANGLE, 3, (3, 3, 3), pts)
        np.testing.assert_allclose(phi[:3].sum(axis=0), 1.0, atol=1e-12)

    @pytest.mark.parametrize("shape, order, edge_orders, nodes", [
        (QUADRILATERAL, (4, 3), (4, 3, 4, 3), [[-1, -1], [1, -1], [1, 1], [-1, 1]]),
        (TRIANGLE, (4, 4), (4, 4, 4), [[-1, -1], [1, -1], [-1, 1]]),
    ])
    def test_higher_functions_vanish_at_vertices(self, shape, order, edge_orders, nodes):
        """边函数与泡函数在顶点处为零"""
        phi, _ = H1Shapeset().evaluate(shape, order, edge_orders, np.array(nodes, dtype=float))
        n_v = len(nodes)
        np.testing.assert_allclose(phi[n_v:], 0.0, atol=1e-12)

    @pytest.mark.parametrize("shape, order, edge_orders, point", [
        (QUADRILATERAL, (3, 2), (3, 2, 3, 2), [0.3, -0.2]),
        (QUADRILATERAL, (2, 4), (1, 4, 2, 3), [-0.5, 0.6]),
        (TRIANGLE, (4, 4), (4, 3, 2), [-0.4, -0.3]),
    ])
    def test_derivatives(self, shape, order, edge_orders, point):
        """参考梯度与中心差分一致"""
        shapeset = H1Shapeset()
        h = 1e-6
        p = np.array([point], dtype=float)
        _, dphi = shapeset.evaluate(shape, order, edge_orders, p)
        for d in range(2):
            step = np.zeros((1, 2))
            step[0, d] = h
            plus, _ = shapeset.evaluate(shape, order, edge_orders, p + step)
            minus, _ = shapeset.evaluate(shape, order, edge_orders, p - step)
            np.testing.assert_allclose(dphi[:, 0, d], (plus - minus)[:, 0] / (2 * h), atol=1e-6)

    @pytest.mark.parametrize("shape, order, edge_orders, to_ref", [
        (QUADRILATERAL, (5, 5), (5, 5, 5, 5), lambda s: np.column_stack([2 * s - 1, -np.ones_like(s)])),
        (TRIANGLE, (5, 5), (5, 5, 5), lambda s: np.column_stack([2 * s - 1, -np.ones_like(s)])),
    ])
    def test_edge_trace(self, shape, order, edge_orders, to_ref):
        """第 0 条边上的迹为 1-s, s, L_2..L_q（两种单元一致）"""
        s = np.linspace(0.05, 0.95, 7)
        phi, _ = H1Shapeset().evaluate(shape, order, edge_orders, to_ref(s))
        layout = basis_layout(shape, make_order(order, shape), edge_orders)
        trace = edge_trace_table(s, 5)

        np.testing.assert_allclose(phi[layout.vertex[0]], trace[0], atol=1e-12)
        np.testing.assert_allclose(phi[layout.vertex[1]], trace[1], atol=1e-12)
        np.testing.assert_allclose(phi[list(layout.edge[0])], trace[2:], atol=1e-12)

    def test_layout_size(self):
        """局部基函数个数"""
        assert basis_layout(QUADRILATERAL, (3, 2), (3, 2, 3, 2)).size == num_shapes(QUADRILATERAL, (3, 2))
        assert basis_layout(TRIANGLE, (4, 4), (4, 4, 4)).size == num_shapes(TRIANGLE, 4) == 15
        # 边阶数低于单元阶数时边函数减少
        assert basis_layout(QUADRILATERAL, (3, 3), (1, 3, 3, 3)).size == 14

    def test_make_order(self):
        assert make_order(3) == (3, 3)
        assert make_order((2, 4), TRIANGLE) == (4, 4)
        with pytest.raises(ValueError):
            make_order(0)

    def test_invalid_element_type(self):
        """测试无效的单元类型"""
        with pytest.raises(ValueError, match="不支持的单元类型"):
            H1Shapeset().evaluate('hexahedron', 1, (1, 1, 1, 1), np.zeros((1, 2)))


class TestQuadrature:
    """积分规则测试"""

    def test_gauss_legendre(self):
        pts, wts = gauss_legendre_1d(4)
        assert len(pts) == 4
        np.testing.assert_allclose(np.sum(wts), 2.0)
        # 4 点规则对 7 次多项式精确
        np.testing.assert_allclose(np.sum(wts * pts ** 6), 2.0 / 7.0)

    def test_reference_areas(self):
        _, wts = element_points_weights(QUADRILATERAL, 3)
        np.testing.assert_allclose(np.sum(wts), 4.0)
        _, wts = element_points_weights(TRIANGLE, 3)
        np.testing.assert_allclose(np.sum(wts), 2.0)

    def test_triangle_polynomial(self):
        """参考三角形上 ∫ (1+xi)^2 = 4/3"""
        pts, wts = element_points_weights(TRIANGLE, 3)
        np.testing.assert_allclose(np.sum(wts * (1.0 + pts[:, 0]) ** 2), 4.0 / 3.0)

    def test_invalid_shape(self):
        with pytest.raises(ValueError, match="不支持的单元类型"):
            element_points_weights('tetrahedron', 2)


class TestTransformations:
    """变换测试"""

    def test_scaled_square(self):
        coords = np.array([[0, 0], [2, 0], [2, 1], [0, 1]], dtype=float)
        pts = np.array([[0.0, 0.0], [1.0, 1.0]])
        x, J = map_to_physical(coords, QUADRILATERAL, pts)

        np.testing.assert_allclose(x, [[1.0, 0.5], [2.0, 1.0]])
        np.testing.assert_allclose(jacobian_det(J), 0.5)

    def test_triangle_map(self):
        coords = np.array([[0, 0], [1, 0], [0, 1]], dtype=float)
        x, J = map_to_physical(coords, TRIANGLE, np.array([[-1.0, -1.0], [1.0, -1.0]]))

        np.testing.assert_allclose(x, [[0.0, 0.0], [1.0, 0.0]], atol=1e-14)
        np.testing.assert_allclose(jacobian_det(J), 0.25)

    def test_affine_map_composition(self):
        inner = AffineMap.from_corners((-1, -1), (0, -1), (-1, 0))
        outer = AffineMap.from_corners((0, 0), (1, 0), (0, 1))
        composed = inner.then(outer)
        p = np.array([[0.3, -0.2]])

        np.testing.assert_allclose(composed.apply(p), outer.apply(inner.apply(p)))
        np.testing.assert_allclose(composed.inverse().apply(composed.apply(p)), p)
        assert composed.det == pytest.approx(1.0 / 16.0)
        assert not composed.is_identity
        assert AffineMap().is_identity


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
