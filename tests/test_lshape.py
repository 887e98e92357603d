"""
L 形算例测试
"""

import numpy as np
import pytest

from hpfem.benchmarks.lshape import (bc_types, bc_values, build_problem, exact_gradient,
                                     exact_value, main)
from hpfem.finite_elements.boundary_conditions import BCType


class TestExactSolution:
    """解析解测试"""

    def test_value_at_corner(self):
        assert exact_value(0.0, 0.0) == 0.0
        np.testing.assert_allclose(exact_gradient(0.0, 0.0), (0.0, 0.0))

    def test_value_on_axis(self):
        # θ = 0 (正 y 轴): sin(π/3)
        assert exact_value(0.0, 1.0) == pytest.approx(np.sin(np.pi / 3.0))
        # 负 y 轴 (θ = π) 是重入角的一条边
        assert exact_value(0.0, -0.5) == pytest.approx(0.0, abs=1e-14)

    def test_gradient_matches_finite_differences(self):
        x = np.array([0.3, -0.7, -0.4, 0.8, 0.1])
        y = np.array([0.5, 0.2, 0.6, 0.9, -0.05])
        h = 1e-6
        dx, dy = exact_gradient(x, y)
        fd_x = (exact_value(x + h, y) - exact_value(x - h, y)) / (2 * h)
        fd_y = (exact_value(x, y + h) - exact_value(x, y - h)) / (2 * h)

        np.testing.assert_allclose(dx, fd_x, rtol=1e-6, atol=1e-8)
        np.testing.assert_allclose(dy, fd_y, rtol=1e-6, atol=1e-8)

    def test_laplacian_vanishes(self):
        x, y, h = 0.4, 0.35, 1e-4
        lap = (exact_value(x + h, y) + exact_value(x - h, y) + exact_value(x, y + h)
               + exact_value(x, y - h) - 4.0 * exact_value(x, y)) / h ** 2
        assert abs(lap) < 1e-5


class TestProblem:
    """算例装配测试"""

    def test_boundary_conditions(self):
        for marker in range(1, 6):
            assert bc_types(marker) is BCType.ESSENTIAL
        assert bc_values(3, -1.0, 1.0) == pytest.approx(float(exact_value(-1.0, 1.0)))

    def test_build_problem(self):
        problem = build_problem()
        assert problem.has_exact
        assert problem.mesh.num_active_elements() == 3
        # 每次都重新读取网格
        assert build_problem().mesh is not problem.mesh


class TestMain:
    """命令行入口测试"""

    def test_single_iteration(self, tmp_path):
        assert main(['--max-iterations', '1', '--output-dir', str(tmp_path)]) == 0
        for name in ('dof_est', 'dof_exact', 'cpu_est', 'cpu_exact'):
            assert (tmp_path / f'conv_{name}.dat').exists()

    def test_config_file(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("init_ref_num: 0\np_init: 2\nerr_stop: 100.0\n", encoding='utf-8')
        assert main(['--config', str(path), '--output-dir', str(tmp_path / 'out')]) == 0
        lines = (tmp_path / 'out' / 'conv_dof_est.dat').read_text(encoding='utf-8').splitlines()
        assert len(lines) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
