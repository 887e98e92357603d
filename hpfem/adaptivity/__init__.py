"""
自适应模块 - 误差估计、单元标记、hp 候选选择与自适应控制
"""

from .error_estimator import ErrorIndicator, ErrorRecord, H1ErrorEstimator, mark_elements
from .selectors import CandList, Candidate, RefinementSelector
from .mesh_refinement import HpRefiner
from .adaptive_solver import (AdaptiveProblem, AdaptivityController, AdaptivityResult,
                              AdaptivityState, IterationRecord, StopReason)

__all__ = [
    'ErrorIndicator',
    'ErrorRecord',
    'H1ErrorEstimator',
    'mark_elements',
    'CandList',
    'Candidate',
    'RefinementSelector',
    'HpRefiner',
    'AdaptiveProblem',
    'AdaptivityController',
    'AdaptivityResult',
    'AdaptivityState',
    'IterationRecord',
    'StopReason',
]
