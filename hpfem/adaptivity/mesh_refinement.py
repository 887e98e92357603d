"""
网格细化器 - 把候选细化应用到网格与函数空间
"""

import logging
import time
from typing import Dict, List, Optional, Sequence

from ..core.exceptions import RegularityViolation
from ..finite_elements.dof_manager import H1Space
from .selectors import Candidate

logger = logging.getLogger(__name__)


class HpRefiner:
    """hp 细化器：剖分单元并设置子单元阶数，或只修改阶数"""

    def __init__(self, space: H1Space):
        self.space = space
        self.mesh = space.mesh
        self.refinement_history: List[Dict] = []
        self.computation_time = 0.0

    def apply(self, element_id: int, candidate: Candidate) -> List[int]:
        """应用候选，返回受影响的活动单元ID；剖分违反正则性时抛出 RegularityViolation"""
        if candidate.split is None:
            self.space.set_order(element_id, candidate.orders[0])
            return [element_id]
        children = self.mesh.refine_element(element_id, candidate.split)
        for child_id, order in zip(children, candidate.orders):
            self.space.set_order(child_id, order)
        self.space.mark_dirty()
        return children

    def apply_ranked(self, element_id: int, ranked: Sequence[Candidate],
                     iteration: Optional[int] = None) -> Optional[Candidate]:
        """
        依次尝试排序后的候选，返回实际应用的候选

        所有候选都违反正则性时跳过该单元并返回 None。
        """
        start_time = time.time()
        try:
            for candidate in ranked:
                try:
                    self.apply(element_id, candidate)
                except RegularityViolation:
                    logger.debug("单元 %d: 候选 %s 违反正则性，尝试下一个", element_id, candidate.kind)
                    continue
                self.refinement_history.append({
                    'iteration': iteration,
                    'element_id': element_id,
                    'kind': candidate.kind,
                    'split': candidate.split.value if candidate.split else None,
                    'orders': candidate.orders,
                })
                return candidate
            logger.warning("单元 %d 的所有候选都违反网格正则性，本步跳过 (迭代 %s)",
                           element_id, iteration)
            return None
        finally:
            self.computation_time += time.time() - start_time
