"""
误差估计与单元标记测试
"""

import numpy as np
import pytest

from hpfem.adaptivity.error_estimator import (ErrorIndicator, ErrorRecord, H1ErrorEstimator,
                                              mark_elements, sort_by_error)
from hpfem.finite_elements.assembly import LinearSystem, RefSystem, project_global
from hpfem.finite_elements.dof_manager import H1Space
from hpfem.finite_elements.solution import ExactSolution

from conftest import (essential, harmonic_quadratic, laplace, smooth, smooth_grad, two_quad_mesh,
                      values_of)


def solve_pair(mesh, fn, order):
    space = H1Space(mesh, essential, values_of(fn), init_order=order)
    fine = RefSystem(laplace(), space).solve()
    coarse = project_global(space, fine)
    return coarse, fine


class TestMarking:
    """标记策略测试"""

    errors = {0: 0.5, 1: 0.3, 2: 0.3, 3: 0.1}

    def test_cumulative_strategy(self):
        assert mark_elements(self.errors, 0, 0.3) == [0]

    def test_cumulative_strategy_keeps_ties(self):
        """单元 1 与 2 误差相同，要么都标记，要么都不标记"""
        assert mark_elements(self.errors, 0, 0.6) == [0, 1, 2]

    def test_cumulative_strategy_full(self):
        assert mark_elements(self.errors, 0, 1.0) == [0, 1, 2, 3]

    def test_tie_tolerance_is_relative_to_last_marked(self):
        errors = {5: 1.0, 3: 0.9995, 4: 0.99}
        assert mark_elements(errors, 0, 0.1) == [5, 3]
        assert mark_elements(errors, 0, 0.1, tie_tolerance=0.02) == [5, 3, 4]

    def test_relative_to_max(self):
        assert mark_elements(self.errors, 1, 0.5) == [0, 1, 2]
        assert mark_elements(self.errors, 1, 0.7) == [0]

    def test_absolute(self):
        assert mark_elements(self.errors, 2, 0.2) == [0, 1, 2]
        assert mark_elements(self.errors, 2, 0.6) == []

    @pytest.mark.parametrize("strategy", [1, 2])
    @pytest.mark.parametrize("seed", range(5))
    def test_smaller_threshold_marks_superset(self, strategy, seed):
        """阈值越小，被标记的单元越多（包含关系）"""
        rng = np.random.default_rng(seed)
        errors = {eid: float(e) for eid, e in enumerate(rng.random(30) ** 3)}
        # 相同误差也要覆盖
        errors[30] = errors[0]
        thresholds = np.linspace(0.01, 1.0, 25)

        marked = [set(mark_elements(errors, strategy, t)) for t in thresholds]
        for small, large in zip(marked, marked[1:]):
            assert small >= large
        assert marked[0] == {eid for eid, e in errors.items()
                             if e > thresholds[0] * (max(errors.values()) if strategy == 1 else 1.0)}

    def test_empty_and_zero(self):
        assert mark_elements({}, 0, 0.3) == []
        assert mark_elements({0: 0.0, 1: 0.0}, 0, 0.3) == []
        assert mark_elements({0: 0.0, 1: 0.0}, 1, 0.3) == []

    def test_invalid_strategy(self):
        with pytest.raises(ValueError, match="不支持的标记策略"):
            mark_elements(self.errors, 3, 0.3)

    def test_sort_by_error(self):
        assert sort_by_error({4: 0.2, 1: 0.3, 2: 0.2}) == [1, 2, 4]

    def test_error_indicator(self):
        with pytest.raises(ValueError, match="不能为负数"):
            ErrorIndicator(0, -1.0)
        record = ErrorRecord({0: 0.3, 1: 0.4}, 50.0, 1.0, marked=[1])
        assert [i.refinement_flag for i in record.indicators] == [False, True]
        assert record.squared_sum() == pytest.approx(0.25)
        assert record.sorted_ids() == [1, 0]


class TestH1ErrorEstimator:
    """基于参考解的误差估计测试"""

    def test_additivity(self):
        """单元误差平方和等于全局估计的平方"""
        mesh = two_quad_mesh()
        mesh.refine_element(0)
        coarse, fine = solve_pair(mesh, smooth, 1)
        record = H1ErrorEstimator().estimate(coarse, fine)

        assert set(record.element_errors) == set(mesh.active_ids())
        assert all(e >= 0.0 for e in record.element_errors.values())
        assert record.global_estimate_percent == pytest.approx(
            100.0 * np.sqrt(record.squared_sum()), rel=1e-12)
        assert record.global_estimate_percent > 0.0

    def test_zero_error_for_resolved_solution(self):
        mesh = two_quad_mesh()
        coarse, fine = solve_pair(mesh, harmonic_quadratic, 2)
        record = H1ErrorEstimator().estimate(coarse, fine)

        assert record.global_estimate_percent < 1e-8
        assert max(record.element_errors.values()) < 1e-10

    def test_estimate_decreases_with_order(self):
        estimator = H1ErrorEstimator()
        estimates = []
        for order in (1, 2, 3):
            coarse, fine = solve_pair(two_quad_mesh(), smooth, order)
            estimates.append(estimator.estimate(coarse, fine).global_estimate_percent)
        assert estimates[0] > estimates[1] > estimates[2]

    def test_estimate_tracks_exact_error(self):
        mesh = two_quad_mesh()
        coarse, fine = solve_pair(mesh, smooth, 2)
        estimator = H1ErrorEstimator()
        est = estimator.estimate(coarse, fine).global_estimate_percent
        exact = estimator.exact_error(coarse, ExactSolution(mesh, smooth, smooth_grad))

        assert 0.2 < est / exact < 5.0

    def test_coarse_solve_instead_of_projection(self):
        mesh = two_quad_mesh()
        space = H1Space(mesh, essential, values_of(smooth), init_order=2)
        fine = RefSystem(laplace(), space).solve()
        coarse = LinearSystem(laplace(), space).solve()
        record = H1ErrorEstimator().estimate(coarse, fine)

        assert 0.0 < record.global_estimate_percent < 100.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
