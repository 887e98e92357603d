"""
误差估计器实现

误差估计以参考（细）解为真解的替代：对粗网格的每个活动单元，
在其参考网格后代单元上积分 |u_fine - u_coarse|_H1^2，再除以 |u_fine|_H1。
单元误差平方和恰为全局估计的平方，标记策略依赖这一可加性。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from ..finite_elements.quadrature import element_points_weights, points_for_order
from ..finite_elements.solution import Solution, calc_rel_h1_error
from ..finite_elements.transformations import jacobian_det, map_to_physical

logger = logging.getLogger(__name__)

# 累积策略中与最后一个被标记单元误差“相等”的相对容差
TIE_TOLERANCE = 1e-3


@dataclass
class ErrorIndicator:
    """误差指示器"""
    element_id: int
    error_value: float
    error_type: str = 'estimate'  # 'estimate', 'exact'
    refinement_flag: bool = False

    def __post_init__(self):
        if self.error_value < 0:
            raise ValueError("误差值不能为负数")


@dataclass
class ErrorRecord:
    """一次误差估计的结果"""
    element_errors: Dict[int, float]  # 相对误差（相对于参考解范数）
    global_estimate_percent: float
    fine_norm: float
    exact_percent: Optional[float] = None
    marked: List[int] = field(default_factory=list)

    @property
    def indicators(self) -> List[ErrorIndicator]:
        marked = set(self.marked)
        return [ErrorIndicator(eid, err, 'estimate', eid in marked)
                for eid, err in sorted(self.element_errors.items())]

    def squared_sum(self) -> float:
        return float(sum(e * e for e in self.element_errors.values()))

    def sorted_ids(self) -> List[int]:
        return sort_by_error(self.element_errors)


def sort_by_error(errors: Dict[int, float]) -> List[int]:
    """按误差降序排列单元ID，误差相同时ID小者在前"""
    return sorted(errors, key=lambda eid: (-errors[eid], eid))


class H1ErrorEstimator:
    """基于参考解的 H1 误差估计器"""

    def __init__(self, extra_points: int = 1):
        self.extra_points = extra_points

    def element_error_squared(self, coarse: Solution, fine: Solution, element_id: int):
        """返回 (|u_fine - u_coarse|^2, |u_fine|^2)，在粗单元 element_id 上"""
        err = 0.0
        norm = 0.0
        e = coarse.mesh.elements[element_id]
        for sub_id, sub_map in fine.mesh.active_descendants(element_id):
            order = max(max(fine.space.get_element_order(sub_id)),
                        max(coarse.space.get_element_order(element_id)))
            pts, wts = element_points_weights(e.shape, points_for_order(order) + self.extra_points)
            _, J = map_to_physical(fine.mesh.element_coords(sub_id), e.shape, pts)
            w = wts * np.abs(jacobian_det(J))
            vf, gf = fine.evaluate_element(sub_id, pts)
            vc, gc = coarse.evaluate_element(element_id, sub_map.apply(pts))
            err += float(np.sum(w * ((vf - vc) ** 2 + np.sum((gf - gc) ** 2, axis=1))))
            norm += float(np.sum(w * (vf ** 2 + np.sum(gf ** 2, axis=1))))
        return err, norm

    def estimate(self, coarse: Solution, fine: Solution) -> ErrorRecord:
        """逐单元相对误差与全局误差估计（%）"""
        squared: Dict[int, float] = {}
        norm_sq = 0.0
        for e in coarse.mesh.active_elements():
            err, norm = self.element_error_squared(coarse, fine, e.id)
            squared[e.id] = err
            norm_sq += norm
        fine_norm = float(np.sqrt(norm_sq))
        scale = fine_norm if fine_norm > 0 else 1.0
        errors = {eid: float(np.sqrt(err)) / scale for eid, err in squared.items()}
        total = 100.0 * float(np.sqrt(sum(squared.values()))) / scale
        logger.debug("误差估计: %d 个单元, |u_ref| = %.6e, err_est = %.6e%%",
                     len(errors), fine_norm, total)
        return ErrorRecord(errors, total, fine_norm)

    def exact_error(self, coarse: Solution, exact) -> float:
        """相对于解析解的 H1 误差（%），仅用于报告"""
        return 100.0 * calc_rel_h1_error(coarse, exact)


def mark_elements(errors: Dict[int, float], strategy: int, threshold: float,
                  tie_tolerance: float = TIE_TOLERANCE) -> List[int]:
    """
    标记需要细化的单元，按误差降序返回

    策略:
        0 - 按误差降序累积平方误差，直到达到 threshold * 总平方误差；
            再加入与最后一个被标记单元误差相等的单元（保持对称性）
        1 - 误差大于 threshold * 最大单元误差
        2 - 误差大于 threshold
    """
    order = sort_by_error(errors)
    if not order:
        return []

    if strategy == 0:
        total = sum(errors[eid] ** 2 for eid in order)
        if total <= 0.0:
            return []
        marked = []
        acc = 0.0
        for eid in order:
            if marked and acc >= threshold * total:
                break
            marked.append(eid)
            acc += errors[eid] ** 2
        last = errors[marked[-1]]
        for eid in order[len(marked):]:
            if abs(errors[eid] - last) <= tie_tolerance * last:
                marked.append(eid)
            else:
                break
        return marked
    elif strategy == 1:
        max_error = errors[order[0]]
        if max_error <= 0.0:
            return []
        return [eid for eid in order if errors[eid] > threshold * max_error]
    elif strategy == 2:
        return [eid for eid in order if errors[eid] > threshold]
    raise ValueError(f"不支持的标记策略: {strategy}")
