"""
hpfem - 二维 H1 问题的 hp 自适应有限元

提供：
- 四边形/三角形混合网格（含悬挂节点）与网格文件读取
- 分层 Lobatto 基函数的 H1 空间与自由度编号
- 基于参考解的误差估计与单元标记
- hp 候选细化选择与自适应控制循环
- L 形区域算例
"""

from .core import AdaptivityConfig, load_config_template
from .core.exceptions import (HpFemError, InconsistentBoundaryData, MalformedMeshFile,
                              NoCandidatesAvailable, RegularityViolation, SolverFailure)
from .finite_elements import BCType, H1Space, Mesh, Solution, SplitKind, WeakForm, load_mesh
from .adaptivity import (AdaptiveProblem, AdaptivityController, AdaptivityResult,
                         AdaptivityState, CandList, StopReason)

__version__ = "0.1.0"
__all__ = [
    # 配置
    'AdaptivityConfig',
    'load_config_template',

    # 异常
    'HpFemError',
    'MalformedMeshFile',
    'InconsistentBoundaryData',
    'RegularityViolation',
    'NoCandidatesAvailable',
    'SolverFailure',

    # 有限元
    'Mesh',
    'SplitKind',
    'load_mesh',
    'BCType',
    'H1Space',
    'WeakForm',
    'Solution',

    # 自适应
    'AdaptiveProblem',
    'AdaptivityController',
    'AdaptivityResult',
    'AdaptivityState',
    'StopReason',
    'CandList',
]
