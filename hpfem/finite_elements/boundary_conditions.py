"""
边界条件分类与边界值

调用者以回调（或映射）形式提供：
- bc_types(marker) -> BCType
- bc_values(marker, x, y) -> 本质边界值
"""

from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Union

import numpy as np

from ..core.exceptions import InconsistentBoundaryData


class BCType(Enum):
    """边界条件类型"""
    ESSENTIAL = 'essential'  # Dirichlet
    NATURAL = 'natural'      # Neumann（齐次，或由弱形式给出）
    NONE = 'none'


BCTypeSource = Union[Callable[[int], object], Mapping[int, object]]
BCValueSource = Union[Callable[[int, float, float], float], Mapping[int, object], None]


def _as_bc_type(value, marker) -> BCType:
    if isinstance(value, BCType):
        return value
    if isinstance(value, str):
        try:
            return BCType(value.lower())
        except ValueError:
            pass
    raise InconsistentBoundaryData(f"边界标记 {marker} 的类型无效: {value!r}")


class BoundaryConditions:
    """边界分类器与边界值回调的组合"""

    def __init__(self, bc_types: BCTypeSource, bc_values: BCValueSource = None):
        self._types = bc_types
        self._values = bc_values

    def classify(self, marker: int) -> BCType:
        try:
            if isinstance(self._types, Mapping):
                raw = self._types[marker]
            else:
                raw = self._types(marker)
        except (KeyError, LookupError) as e:
            raise InconsistentBoundaryData(f"边界标记 {marker} 没有对应的边界条件类型") from e
        if raw is None:
            raise InconsistentBoundaryData(f"边界标记 {marker} 没有对应的边界条件类型")
        return _as_bc_type(raw, marker)

    def is_essential(self, marker: int) -> bool:
        return self.classify(marker) == BCType.ESSENTIAL

    def value(self, marker: int, x, y) -> np.ndarray:
        """在若干点上计算本质边界值"""
        fn = self._value_function(marker)
        x = np.atleast_1d(np.asarray(x, dtype=float))
        y = np.atleast_1d(np.asarray(y, dtype=float))
        return np.array([float(fn(marker, xi, yi)) for xi, yi in zip(x, y)])

    def _value_function(self, marker):
        if self._values is None:
            raise InconsistentBoundaryData(f"本质边界标记 {marker} 没有边界值函数")
        if isinstance(self._values, Mapping):
            if marker not in self._values:
                raise InconsistentBoundaryData(f"本质边界标记 {marker} 没有边界值")
            entry = self._values[marker]
            if callable(entry):
                return lambda m, x, y: entry(x, y)
            return lambda m, x, y: entry
        return self._values

    def validate(self, markers: Iterable[int]):
        """检查每个边界标记都有分类，且本质边界都有边界值"""
        for marker in sorted(set(markers)):
            if self.classify(marker) == BCType.ESSENTIAL:
                self._value_function(marker)


def as_boundary_conditions(bc_types: Union[BoundaryConditions, BCTypeSource],
                           bc_values: Optional[BCValueSource] = None) -> BoundaryConditions:
    if isinstance(bc_types, BoundaryConditions):
        return bc_types
    return BoundaryConditions(bc_types, bc_values)
