"""
装配、线性系统与求解器测试
"""

import numpy as np
import pytest
from scipy.sparse import csr_matrix

from hpfem.core.exceptions import SolverFailure
from hpfem.finite_elements.assembly import (LinearSystem, RefSystem, WeakForm, laplace_form,
                                            project_global, source_form)
from hpfem.finite_elements.dof_manager import H1Space
from hpfem.finite_elements.solution import (ExactSolution, Solution, calc_h1_norm,
                                            calc_rel_h1_error)
from hpfem.finite_elements.solvers import (DirectSolver, IterativeSolver, SolverConfig,
                                           SolverFactory, solve_linear_system)

from conftest import (essential, harmonic_quadratic, harmonic_quadratic_grad, laplace, natural,
                      smooth, smooth_grad, square_mesh, triangle_mesh, two_quad_mesh, values_of)


class TestSolvers:
    """线性求解器测试"""

    def setup_method(self):
        self.A = csr_matrix(np.array([[4.0, -1.0, 0.0], [-1.0, 4.0, -1.0], [0.0, -1.0, 4.0]]))
        self.b = np.array([1.0, 2.0, 3.0])
        self.expected = np.linalg.solve(self.A.toarray(), self.b)

    def test_direct_solver(self):
        x = DirectSolver().solve(self.A, self.b)
        np.testing.assert_allclose(x, self.expected, rtol=1e-12)

    @pytest.mark.parametrize("method, preconditioner", [
        ("cg", "jacobi"), ("gmres", "ilu"), ("bicgstab", "none"),
    ])
    def test_iterative_solver(self, method, preconditioner):
        config = SolverConfig(solver_type="iterative", method=method, preconditioner=preconditioner)
        x = IterativeSolver(config).solve(self.A, self.b)
        np.testing.assert_allclose(x, self.expected, rtol=1e-8)

    def test_factory(self):
        assert isinstance(SolverFactory.create_solver(SolverConfig()), DirectSolver)
        assert isinstance(SolverFactory.create_solver(SolverConfig(solver_type="iterative")),
                          IterativeSolver)
        with pytest.raises(ValueError, match="不支持的求解器类型"):
            SolverFactory.create_solver(SolverConfig(solver_type="multigrid"))

    def test_singular_matrix(self):
        A = csr_matrix(np.array([[1.0, 0.0], [0.0, 0.0]]))
        with pytest.raises(SolverFailure):
            solve_linear_system(A, np.array([1.0, 1.0]))

    def test_empty_system(self):
        x = solve_linear_system(csr_matrix((0, 0)), np.zeros(0))
        assert x.shape == (0,)


class TestLinearSystem:
    """弱形式装配与求解测试"""

    @pytest.mark.parametrize("mesh_factory, refine", [
        (square_mesh, False),
        (two_quad_mesh, True),
        (triangle_mesh, False),
    ])
    def test_laplace_reproduces_quadratic(self, mesh_factory, refine):
        """调和二次函数 x^2 - y^2 在 p = 2 空间中被精确求出"""
        mesh = mesh_factory()
        if refine:
            mesh.refine_element(0)
        space = H1Space(mesh, essential, values_of(harmonic_quadratic), init_order=2)
        sol = LinearSystem(laplace(), space).solve()
        exact = ExactSolution(mesh, harmonic_quadratic, harmonic_quadratic_grad)

        assert calc_rel_h1_error(sol, exact) < 1e-8

    def test_poisson_with_source(self):
        """-Δu = f，u = x(1-x)y(1-y)，齐次本质边界"""
        wf = WeakForm()
        wf.add_matrix_form(laplace_form)
        wf.add_vector_form(source_form(lambda x, y: 2.0 * y * (1 - y) + 2.0 * x * (1 - x)))
        space = H1Space(square_mesh(), essential, values_of(lambda x, y: 0.0), init_order=2)
        system = LinearSystem(wf, space)
        A, b = system.assemble()

        assert A.shape == (1, 1)
        np.testing.assert_allclose(A.toarray(), A.toarray().T)
        sol = system.solve()
        assert sol(0.5, 0.5) == pytest.approx(1.0 / 16.0, abs=1e-12)
        assert sol(0.25, 0.5) == pytest.approx(0.75 * 0.25 * 0.25, abs=1e-12)

    def test_symmetric_matrix(self):
        space = H1Space(two_quad_mesh(), natural, init_order=3)
        wf = WeakForm()
        wf.add_matrix_form(lambda ev: laplace_form(ev) + 0.1 * np.outer(ev.phi.sum(axis=1),
                                                                        np.ones(len(ev.phi))))
        A, _ = LinearSystem(wf, space).assemble()
        np.testing.assert_allclose(A.toarray(), A.toarray().T, atol=1e-12)

    def test_reference_system(self):
        mesh = square_mesh()
        space = H1Space(mesh, essential, values_of(smooth), init_order=2)
        ref = RefSystem(laplace(), space, order_increase=1, max_order=10)

        assert ref.space.mesh is not mesh
        assert mesh.num_active_elements() == 1
        assert ref.space.mesh.num_active_elements() == 4
        assert set(ref.space.element_orders().values()) == {(3, 3)}
        assert ref.get_num_dofs() == 5 * 5

        fine = ref.solve()
        coarse = project_global(space, fine)
        exact = ExactSolution(mesh, smooth, smooth_grad)
        assert calc_rel_h1_error(fine, exact) < calc_rel_h1_error(coarse, exact)

    def test_projection_of_fine_solution_in_coarse_space(self):
        """参考解本身属于粗空间时，投影精确复现"""
        mesh = square_mesh()
        space = H1Space(mesh, essential, values_of(harmonic_quadratic), init_order=2)
        fine = RefSystem(laplace(), space).solve()
        coarse = LinearSystem(laplace(), space).project_global(fine)

        for x, y in [(0.2, 0.3), (0.75, 0.5), (0.9, 0.1)]:
            assert coarse(x, y) == pytest.approx(fine(x, y), abs=1e-10)


class TestSolution:
    """有限元解测试"""

    def test_length_mismatch(self):
        space = H1Space(square_mesh(), natural, init_order=1)
        with pytest.raises(ValueError, match="自由度数"):
            Solution(space, np.zeros(3))

    def test_h1_norm(self):
        """u = x 在单位正方形上 |u|_H1^2 = 1/3 + 1"""
        mesh = square_mesh()
        space = H1Space(mesh, natural, init_order=1)
        sol = project_global(space, ExactSolution(mesh, lambda x, y: x,
                                                  lambda x, y: (np.ones_like(x), np.zeros_like(y))))
        assert calc_h1_norm(sol) == pytest.approx(np.sqrt(4.0 / 3.0), rel=1e-10)

    def test_point_outside(self):
        space = H1Space(square_mesh(), natural, init_order=1)
        sol = Solution(space, np.zeros(4))
        with pytest.raises(ValueError, match="不在网格内"):
            sol(2.0, 2.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
