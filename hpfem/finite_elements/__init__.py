"""
有限元方法模块

提供 hp-FEM 所需的有限元部件，包括：
- 分层 Lobatto 基函数
- 高斯积分
- 仿射/双线性变换
- 网格（含悬挂节点的细化）与网格文件读取
- 边界条件与 H1 空间的自由度编号
- 矩阵组装、全局投影与线性求解器
"""

from .basis_functions import QUADRILATERAL, TRIANGLE, H1Shapeset, make_order, num_shapes
from .quadrature import element_points_weights, points_for_order
from .transformations import AffineMap, jacobian_det, map_to_physical
from .mesh import Element, Mesh, SplitKind, edge_key
from .mesh_io import build_mesh, load_mesh, parse_brace_format
from .boundary_conditions import BCType, BoundaryConditions
from .dof_manager import ElementMap, H1Space
from .solution import ExactSolution, Solution, calc_h1_norm, calc_rel_h1_error
from .solvers import SolverConfig, SolverFactory, solve_linear_system
from .assembly import (LinearSystem, RefSystem, WeakForm, h1_form, laplace_form, mass_form,
                       project_global, source_form)

__version__ = "0.1.0"
__all__ = [
    # 基函数
    'TRIANGLE',
    'QUADRILATERAL',
    'H1Shapeset',
    'make_order',
    'num_shapes',

    # 积分与变换
    'element_points_weights',
    'points_for_order',
    'AffineMap',
    'jacobian_det',
    'map_to_physical',

    # 网格
    'Element',
    'Mesh',
    'SplitKind',
    'edge_key',
    'build_mesh',
    'load_mesh',
    'parse_brace_format',

    # 空间与边界条件
    'BCType',
    'BoundaryConditions',
    'ElementMap',
    'H1Space',

    # 解
    'Solution',
    'ExactSolution',
    'calc_h1_norm',
    'calc_rel_h1_error',

    # 组装与求解
    'WeakForm',
    'laplace_form',
    'mass_form',
    'h1_form',
    'source_form',
    'LinearSystem',
    'RefSystem',
    'project_global',
    'SolverConfig',
    'SolverFactory',
    'solve_linear_system',
]
