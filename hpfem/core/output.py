"""
收敛曲线与计时
"""

import logging
import time
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

# 可选依赖
try:
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt
    HAS_MATPLOTLIB = True
except ImportError:
    HAS_MATPLOTLIB = False
    plt = None

logger = logging.getLogger(__name__)


class ConvergenceGraph:
    """
    收敛曲线 (x, y) 序列

    每次 save() 都用完整历史重写文件，每行一对 "x y"。
    """

    def __init__(self, name: str = "", x_label: str = "", y_label: str = ""):
        self.name = name
        self.x_label = x_label
        self.y_label = y_label
        self._values: List[Tuple[float, float]] = []

    def add_values(self, x: float, y: float):
        self._values.append((float(x), float(y)))

    @property
    def values(self) -> List[Tuple[float, float]]:
        return list(self._values)

    def __len__(self):
        return len(self._values)

    def save(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            for x, y in self._values:
                f.write(f"{x:.16g} {y:.16g}\n")

    @classmethod
    def load(cls, path: Union[str, Path], name: str = "") -> 'ConvergenceGraph':
        graph = cls(name or Path(path).stem)
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                if line.strip():
                    x, y = line.split()
                    graph.add_values(float(x), float(y))
        return graph


class TimePeriod:
    """累计 CPU 时间；tick(skip=True) 丢弃自上次 tick 以来的时间"""

    def __init__(self, clock=time.process_time):
        self._clock = clock
        self._last = clock()
        self._accumulated = 0.0

    def tick(self, skip: bool = False) -> 'TimePeriod':
        now = self._clock()
        if not skip:
            self._accumulated += now - self._last
        self._last = now
        return self

    def accumulated(self) -> float:
        return self._accumulated

    def reset(self):
        self._last = self._clock()
        self._accumulated = 0.0


def plot_convergence(graphs: Dict[str, ConvergenceGraph], path: Union[str, Path],
                     title: Optional[str] = None, log_x: bool = False) -> bool:
    """把若干收敛曲线画在同一张半对数图上，matplotlib 不可用时返回 False"""
    if not HAS_MATPLOTLIB:
        warnings.warn("matplotlib not available. Convergence plots are skipped.")
        return False

    fig, ax = plt.subplots(figsize=(8, 6))
    for label, graph in graphs.items():
        if not len(graph):
            continue
        x, y = zip(*graph.values)
        ax.plot(x, y, 'o-', label=label, markersize=4)
    ax.set_yscale('log')
    if log_x:
        ax.set_xscale('log')
    first = next(iter(graphs.values()), None)
    if first is not None:
        ax.set_xlabel(first.x_label)
        ax.set_ylabel(first.y_label)
    if title:
        ax.set_title(title)
    ax.grid(True, which='both', alpha=0.3)
    ax.legend()
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    logger.info("收敛图已保存: %s", path)
    return True
