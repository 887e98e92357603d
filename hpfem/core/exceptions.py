"""
异常体系

致命错误（网格文件、边界数据、候选集合、求解器）直接终止自适应循环，
RegularityViolation 由控制器捕获并跳过对应单元。
"""

from typing import Optional


class HpFemError(Exception):
    """hp-FEM 异常基类"""

    def __init__(self, message: str = "", iteration: Optional[int] = None,
                 element_id: Optional[int] = None):
        super().__init__(message)
        self.iteration = iteration
        self.element_id = element_id

    def __str__(self):
        msg = super().__str__()
        where = []
        if self.iteration is not None:
            where.append(f"迭代 {self.iteration}")
        if self.element_id is not None:
            where.append(f"单元 {self.element_id}")
        if where:
            msg = f"{msg} ({', '.join(where)})"
        return msg


class MalformedMeshFile(HpFemError, ValueError):
    """网格文件结构不一致"""


class InconsistentBoundaryData(HpFemError, ValueError):
    """边界标记缺少分类或边界值"""


class RegularityViolation(HpFemError):
    """细化会使悬挂节点级别超过允许值"""


class NoCandidatesAvailable(HpFemError, ValueError):
    """候选细化集合为空"""


class SolverFailure(HpFemError, RuntimeError):
    """线性系统求解失败"""
