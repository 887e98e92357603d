"""
核心模块 - 配置、异常与输出工具
"""

from .config import AdaptivityConfig, load_config_template
from .exceptions import (HpFemError, InconsistentBoundaryData, MalformedMeshFile,
                         NoCandidatesAvailable, RegularityViolation, SolverFailure)
from .output import ConvergenceGraph, TimePeriod, plot_convergence

__all__ = [
    'AdaptivityConfig',
    'load_config_template',
    'HpFemError',
    'MalformedMeshFile',
    'InconsistentBoundaryData',
    'RegularityViolation',
    'NoCandidatesAvailable',
    'SolverFailure',
    'ConvergenceGraph',
    'TimePeriod',
    'plot_convergence',
]
