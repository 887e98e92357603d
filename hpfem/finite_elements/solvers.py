"""
线性求解器模块
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union

import numpy as np
from scipy.sparse import csc_matrix, csr_matrix, issparse
from scipy.sparse.linalg import LinearOperator, bicgstab, cg, gmres, spilu, splu

from ..core.exceptions import SolverFailure

logger = logging.getLogger(__name__)

Matrix = Union[np.ndarray, csr_matrix, csc_matrix]


@dataclass
class SolverConfig:
    """求解器配置"""
    solver_type: str = "direct"  # 'direct', 'iterative'
    method: str = "lu"  # 'lu', 'gmres', 'cg', 'bicgstab'
    tolerance: float = 1e-10
    max_iterations: int = 2000
    preconditioner: str = "ilu"  # 'ilu', 'jacobi', 'none'
    verbose: bool = False


class LinearSolver(ABC):
    """线性求解器抽象基类"""

    @abstractmethod
    def solve(self, A: Matrix, b: np.ndarray) -> np.ndarray:
        """求解线性系统 Ax = b"""
        pass

    @abstractmethod
    def setup(self, A: Matrix):
        """设置求解器（如分解、预处理器）"""
        pass


def _check_solution(x: np.ndarray) -> np.ndarray:
    if not np.all(np.isfinite(x)):
        raise SolverFailure("线性系统解包含非有限值")
    return x


class DirectSolver(LinearSolver):
    """直接求解器（稀疏 LU）"""

    def __init__(self, config: SolverConfig = None):
        self.config = config or SolverConfig(solver_type="direct")
        self.factorized = None

    def setup(self, A: Matrix):
        """LU分解"""
        if self.config.method != "lu":
            raise ValueError(f"不支持的直接求解方法: {self.config.method}")
        try:
            if issparse(A):
                self.factorized = splu(csc_matrix(A))
            else:
                self.factorized = splu(csc_matrix(np.asarray(A)))
        except RuntimeError as e:
            raise SolverFailure(f"LU分解失败: {e}") from e

    def solve(self, A: Matrix, b: np.ndarray) -> np.ndarray:
        """求解"""
        if A.shape[0] == 0:
            return np.zeros(0)
        self.setup(A)
        x = self.factorized.solve(np.asarray(b, dtype=float))
        return _check_solution(x)


class IterativeSolver(LinearSolver):
    """迭代求解器"""

    def __init__(self, config: SolverConfig = None):
        self.config = config or SolverConfig(solver_type="iterative", method="cg")
        self.preconditioner = None

    def setup(self, A: Matrix):
        """设置预处理器"""
        A = csr_matrix(A)
        if self.config.preconditioner == "ilu":
            ilu = spilu(A.tocsc())
            self.preconditioner = LinearOperator(A.shape, ilu.solve)
        elif self.config.preconditioner == "jacobi":
            # 雅可比预处理器
            diag = A.diagonal()
            self.preconditioner = LinearOperator(A.shape, lambda x: x / diag)
        else:
            self.preconditioner = None

    def solve(self, A: Matrix, b: np.ndarray) -> np.ndarray:
        """迭代求解"""
        if A.shape[0] == 0:
            return np.zeros(0)
        self.setup(A)
        methods = {"gmres": gmres, "cg": cg, "bicgstab": bicgstab}
        if self.config.method not in methods:
            raise ValueError(f"不支持的迭代方法: {self.config.method}")
        x, info = methods[self.config.method](A, b, rtol=self.config.tolerance,
                                              maxiter=self.config.max_iterations,
                                              M=self.preconditioner)
        if info != 0:
            raise SolverFailure(f"迭代求解器 {self.config.method} 未收敛 (info={info})")
        if self.config.verbose:
            logger.info("%s 残差: %.2e", self.config.method, np.linalg.norm(b - A @ x))
        return _check_solution(x)


class SolverFactory:
    """求解器工厂"""

    @staticmethod
    def create_solver(config: SolverConfig) -> LinearSolver:
        """创建求解器"""
        if config.solver_type == "direct":
            return DirectSolver(config)
        elif config.solver_type == "iterative":
            return IterativeSolver(config)
        else:
            raise ValueError(f"不支持的求解器类型: {config.solver_type}")


# 便捷函数
def solve_linear_system(A: Matrix, b: np.ndarray, config: SolverConfig = None) -> np.ndarray:
    """求解线性系统"""
    solver = SolverFactory.create_solver(config or SolverConfig())
    return solver.solve(A, b)
