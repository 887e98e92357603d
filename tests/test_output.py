"""
收敛曲线与计时测试
"""

import pytest

from hpfem.core import output
from hpfem.core.output import ConvergenceGraph, TimePeriod, plot_convergence


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestConvergenceGraph:
    """收敛曲线测试"""

    def test_save_and_load(self, tmp_path):
        graph = ConvergenceGraph('误差估计', 'DOF', '误差 [%]')
        graph.add_values(81, 12.5)
        graph.add_values(145, 3.25)
        path = tmp_path / 'out' / 'conv_dof_est.dat'
        graph.save(path)

        assert path.read_text(encoding='utf-8') == "81 12.5\n145 3.25\n"
        loaded = ConvergenceGraph.load(path)
        assert loaded.name == 'conv_dof_est'
        assert loaded.values == [(81.0, 12.5), (145.0, 3.25)]

    def test_save_rewrites_history(self, tmp_path):
        graph = ConvergenceGraph()
        path = tmp_path / 'conv.dat'
        graph.add_values(1, 1.0)
        graph.save(path)
        graph.add_values(2, 0.5)
        graph.save(path)

        assert len(path.read_text(encoding='utf-8').splitlines()) == 2
        assert len(graph) == 2


class TestTimePeriod:
    """计时测试"""

    def test_tick_and_skip(self):
        clock = FakeClock()
        timer = TimePeriod(clock)

        clock.now = 2.0
        timer.tick()
        clock.now = 5.0
        timer.tick(skip=True)
        clock.now = 5.5
        timer.tick()

        assert timer.accumulated() == pytest.approx(2.5)

    def test_reset(self):
        clock = FakeClock()
        timer = TimePeriod(clock)
        clock.now = 3.0
        timer.tick()
        timer.reset()
        clock.now = 4.0

        assert timer.accumulated() == 0.0
        assert timer.tick().accumulated() == pytest.approx(1.0)


class TestPlotting:
    """收敛图测试"""

    def test_without_matplotlib(self, tmp_path, monkeypatch):
        monkeypatch.setattr(output, 'HAS_MATPLOTLIB', False)
        graph = ConvergenceGraph()
        graph.add_values(10, 1.0)

        with pytest.warns(UserWarning, match="matplotlib"):
            assert plot_convergence({'err_est': graph}, tmp_path / 'conv.png') is False
        assert not (tmp_path / 'conv.png').exists()

    def test_plot(self, tmp_path):
        pytest.importorskip("matplotlib")
        est = ConvergenceGraph('误差估计', 'DOF', '误差 [%]')
        for ndof, err in [(81, 10.0), (150, 4.0), (300, 1.5)]:
            est.add_values(ndof, err)
        path = tmp_path / 'conv.png'

        assert plot_convergence({'err_est': est, 'err_exact': ConvergenceGraph()}, path,
                                title='hp-FEM 收敛', log_x=True)
        assert path.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
