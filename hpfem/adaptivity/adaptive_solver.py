"""
hp 自适应控制器

状态机：
    INIT -> SOLVE_FINE -> SOLVE_COARSE_OR_PROJECT -> ESTIMATE -> CHECK_STOP
         -> DONE | MARK_AND_REFINE -> SOLVE_FINE

每次 step() 执行一个状态转移，run() 循环到 DONE。

停止条件：CHECK_STOP 中误差估计低于 err_stop；细化后自由度达到 ndof_stop，
或达到 max_iterations。另有 NO_PROGRESS：仅当本步所有标记单元都未被细化
（因网格正则性被跳过，或已没有增加自由度的候选）时触发，否则下一步会原样重复。
网格与函数空间只由控制器修改。
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..core.config import AdaptivityConfig
from ..core.exceptions import HpFemError
from ..core.output import ConvergenceGraph, TimePeriod, plot_convergence
from ..finite_elements.assembly import LinearSystem, RefSystem, WeakForm, project_global
from ..finite_elements.dof_manager import H1Space
from ..finite_elements.mesh import Mesh
from ..finite_elements.solution import ExactSolution, Solution
from ..finite_elements.solvers import SolverConfig
from .error_estimator import ErrorRecord, H1ErrorEstimator, mark_elements
from .mesh_refinement import HpRefiner
from .selectors import RefinementSelector

logger = logging.getLogger(__name__)

# 参考空间的最高阶数
REF_MAX_ORDER = 10


class AdaptivityState(Enum):
    INIT = 'init'
    SOLVE_FINE = 'solve_fine'
    SOLVE_COARSE_OR_PROJECT = 'solve_coarse_or_project'
    ESTIMATE = 'estimate'
    CHECK_STOP = 'check_stop'
    MARK_AND_REFINE = 'mark_and_refine'
    DONE = 'done'


class StopReason(Enum):
    ERR_STOP = 'err_stop'
    NDOF_STOP = 'ndof_stop'
    MAX_ITERATIONS = 'max_iterations'
    NO_PROGRESS = 'no_progress'  # 所有标记单元都未被细化


@dataclass
class AdaptiveProblem:
    """
    待求解问题：网格、边界条件、弱形式，以及可选的解析解 (value, gradient)
    """
    mesh: Mesh
    bc_types: object
    bc_values: object
    weak_form: WeakForm
    exact_value: Optional[Callable] = None
    exact_gradient: Optional[Callable] = None

    @property
    def has_exact(self):
        return self.exact_value is not None and self.exact_gradient is not None


@dataclass
class IterationRecord:
    """单步自适应的统计"""
    iteration: int
    ndof_coarse: int
    ndof_fine: int
    err_est: float
    err_exact: Optional[float] = None
    cpu_time: float = 0.0
    n_marked: int = 0
    n_refined: int = 0
    n_skipped: int = 0
    n_unchanged: int = 0


@dataclass
class AdaptivityResult:
    done: bool
    stop_reason: Optional[StopReason]
    iterations: int
    ndof: int
    err_est: float
    err_exact: Optional[float]
    cpu_time: float
    history: List[IterationRecord] = field(default_factory=list)
    mesh: Optional[Mesh] = None
    space: Optional[H1Space] = None
    solution: Optional[Solution] = None
    fine_solution: Optional[Solution] = None


class AdaptivityController:
    """
    hp 自适应循环

    参数:
        problem: 待求解问题（网格归控制器所有，会被原地细化）
        config: 自适应配置
        solver_config: 线性求解器配置
    """

    def __init__(self, problem: AdaptiveProblem, config: Optional[AdaptivityConfig] = None,
                 solver_config: Optional[SolverConfig] = None):
        self.problem = problem
        self.config = config or AdaptivityConfig()
        self.solver_config = solver_config or SolverConfig()
        self.selector = RefinementSelector(self.config.cand_list, self.config.conv_exp,
                                           self.config.max_order, self.config.max_order_increase,
                                           self.config.error_weights)
        self.estimator = H1ErrorEstimator()

        self.state = AdaptivityState.INIT
        self.iteration = 0
        self.done = False
        self.stop_reason: Optional[StopReason] = None
        self.err_est: Optional[float] = None
        self.err_exact: Optional[float] = None
        self.ndof = 0

        self.mesh: Optional[Mesh] = None
        self.space: Optional[H1Space] = None
        self.refiner: Optional[HpRefiner] = None
        self.exact: Optional[ExactSolution] = None
        self.fine_solution: Optional[Solution] = None
        self.coarse_solution: Optional[Solution] = None
        self.ndof_fine = 0
        self.error_record: Optional[ErrorRecord] = None
        self.history: List[IterationRecord] = []

        self.graphs = {
            'dof_est': ConvergenceGraph('误差估计', 'DOF', '误差 [%]'),
            'dof_exact': ConvergenceGraph('精确误差', 'DOF', '误差 [%]'),
            'cpu_est': ConvergenceGraph('误差估计', 'CPU 时间 [s]', '误差 [%]'),
            'cpu_exact': ConvergenceGraph('精确误差', 'CPU 时间 [s]', '误差 [%]'),
        }
        self.cpu_time = TimePeriod()

        self._handlers = {
            AdaptivityState.INIT: self._init,
            AdaptivityState.SOLVE_FINE: self._solve_fine,
            AdaptivityState.SOLVE_COARSE_OR_PROJECT: self._solve_coarse_or_project,
            AdaptivityState.ESTIMATE: self._estimate,
            AdaptivityState.CHECK_STOP: self._check_stop,
            AdaptivityState.MARK_AND_REFINE: self._mark_and_refine,
        }

    # ---- 驱动 ----

    def step(self) -> AdaptivityState:
        """执行一个状态转移，返回新状态"""
        if self.state == AdaptivityState.DONE:
            return self.state
        handler = self._handlers[self.state]
        try:
            self.state = handler()
        except HpFemError as exc:
            if exc.iteration is None:
                exc.iteration = self.iteration
            logger.error("自适应循环在状态 %s 终止: %s", self.state.value, exc)
            raise
        return self.state

    def run(self) -> AdaptivityResult:
        start = time.time()
        while self.state != AdaptivityState.DONE:
            self.step()
        logger.info("自适应结束: %s, %d 步, ndof = %d, err_est = %.6g%%, CPU %.2f s (墙钟 %.2f s)",
                     self.stop_reason.value if self.stop_reason else '-', self.iteration,
                     self.ndof, self.err_est, self.cpu_time.accumulated(), time.time() - start)
        return self.result()

    def result(self) -> AdaptivityResult:
        return AdaptivityResult(
            done=self.done, stop_reason=self.stop_reason, iterations=self.iteration,
            ndof=self.ndof, err_est=self.err_est, err_exact=self.err_exact,
            cpu_time=self.cpu_time.accumulated(), history=list(self.history),
            mesh=self.mesh, space=self.space, solution=self.coarse_solution,
            fine_solution=self.fine_solution)

    # ---- 状态处理 ----

    def _init(self) -> AdaptivityState:
        cfg = self.config
        mesh = self.problem.mesh
        for _ in range(cfg.init_ref_num):
            mesh.refine_all_elements()
        mesh.max_regularity = cfg.mesh_regularity
        self.mesh = mesh
        self.space = H1Space(mesh, self.problem.bc_types, self.problem.bc_values, cfg.p_init)
        self.refiner = HpRefiner(self.space)
        if self.problem.has_exact:
            self.exact = ExactSolution(mesh, self.problem.exact_value, self.problem.exact_gradient)
        self.ndof = self.space.get_num_dofs()
        self.iteration = 1
        logger.info("初始网格: %d 个单元, 阶数 %d, ndof = %d",
                    mesh.num_active_elements(), cfg.p_init, self.ndof)
        self.cpu_time.reset()
        return AdaptivityState.SOLVE_FINE

    def _solve_fine(self) -> AdaptivityState:
        logger.info("---- 自适应步 %d:", self.iteration)
        logger.info("在参考网格上求解")
        ref_system = RefSystem(self.problem.weak_form, self.space,
                               order_increase=self.config.ref_order_increase,
                               max_order=REF_MAX_ORDER, solver_config=self.solver_config)
        self.fine_solution = ref_system.solve()
        self.ndof_fine = ref_system.get_num_dofs()
        return AdaptivityState.SOLVE_COARSE_OR_PROJECT

    def _solve_coarse_or_project(self) -> AdaptivityState:
        if self.space.is_dirty:
            self.space.assign_dofs()
        if self.config.solve_on_coarse_mesh:
            logger.info("在粗网格上求解")
            self.coarse_solution = LinearSystem(self.problem.weak_form, self.space,
                                                self.solver_config).solve()
        else:
            logger.info("把参考解投影到粗网格")
            self.coarse_solution = project_global(self.space, self.fine_solution, self.solver_config)
        self.ndof = self.space.get_num_dofs()
        return AdaptivityState.ESTIMATE

    def _estimate(self) -> AdaptivityState:
        logger.info("计算误差估计")
        self.error_record = self.estimator.estimate(self.coarse_solution, self.fine_solution)
        self.err_est = self.error_record.global_estimate_percent
        self.cpu_time.tick()

        self.err_exact = None
        if self.exact is not None:
            self.err_exact = self.estimator.exact_error(self.coarse_solution, self.exact)
            self.error_record.exact_percent = self.err_exact
        self.cpu_time.tick(skip=True)

        logger.info("ndof_coarse: %d, ndof_fine: %d", self.ndof, self.ndof_fine)
        if self.err_exact is not None:
            logger.info("err_est_coarse: %g%%, err_exact: %g%%", self.err_est, self.err_exact)
        else:
            logger.info("err_est_coarse: %g%%", self.err_est)

        cpu = self.cpu_time.accumulated()
        self.graphs['dof_est'].add_values(self.ndof, self.err_est)
        self.graphs['cpu_est'].add_values(cpu, self.err_est)
        if self.err_exact is not None:
            self.graphs['dof_exact'].add_values(self.ndof, self.err_exact)
            self.graphs['cpu_exact'].add_values(cpu, self.err_exact)
        self._save_graphs()

        self.history.append(IterationRecord(self.iteration, self.ndof, self.ndof_fine,
                                            self.err_est, self.err_exact, cpu))
        return AdaptivityState.CHECK_STOP

    def _check_stop(self) -> AdaptivityState:
        if self.err_est < self.config.err_stop:
            return self._finish(StopReason.ERR_STOP)
        return AdaptivityState.MARK_AND_REFINE

    def _mark_and_refine(self) -> AdaptivityState:
        cfg = self.config
        logger.info("自适应网格细化")
        errors = self.error_record.element_errors
        marked = mark_elements(errors, cfg.strategy, cfg.threshold)
        self.error_record.marked = list(marked)
        logger.debug("标记 %d / %d 个单元", len(marked), len(errors))

        # 先对所有标记单元排序候选，再依次应用（候选只依赖本步的网格与参考解）
        plans = []
        for element_id in marked:
            element = self.mesh.get_element(element_id)
            order = self.space.get_element_order(element_id)
            try:
                plans.append((element_id, self.selector.rank_candidates(element, order,
                                                                        self.fine_solution)))
            except HpFemError as exc:
                exc.element_id = element_id
                raise

        refined = 0
        skipped = 0
        unchanged = 0
        for element_id, ranked in plans:
            if not ranked:
                # 已达最高阶等情况：保持现状
                logger.debug("单元 %d 没有增加自由度的候选，保持不变", element_id)
                unchanged += 1
            elif self.refiner.apply_ranked(element_id, ranked, self.iteration) is None:
                skipped += 1
            else:
                refined += 1

        self.space.assign_dofs()
        ndof = self.space.get_num_dofs()
        record = self.history[-1]
        record.n_marked, record.n_refined, record.n_skipped = len(marked), refined, skipped
        record.n_unchanged = unchanged
        logger.info("细化 %d 个单元（跳过 %d），ndof: %d -> %d", refined, skipped, self.ndof, ndof)
        self.ndof = ndof
        self.cpu_time.tick()

        if ndof >= cfg.ndof_stop:
            return self._finish(StopReason.NDOF_STOP)
        if cfg.max_iterations is not None and self.iteration >= cfg.max_iterations:
            return self._finish(StopReason.MAX_ITERATIONS)
        if refined == 0:
            logger.warning("本步没有单元被细化，停止自适应 (迭代 %d)", self.iteration)
            return self._finish(StopReason.NO_PROGRESS)
        self.iteration += 1
        return AdaptivityState.SOLVE_FINE

    def _finish(self, reason: StopReason) -> AdaptivityState:
        self.done = True
        self.stop_reason = reason
        logger.info("停止条件: %s", reason.value)
        return AdaptivityState.DONE

    # ---- 输出 ----

    def _save_graphs(self):
        if self.config.output_dir is None:
            return
        out = Path(self.config.output_dir)
        for name, graph in self.graphs.items():
            graph.save(out / f'conv_{name}.dat')

    def plot(self, path=None) -> bool:
        """绘制 DOF 收敛曲线（需要 matplotlib）"""
        if path is None:
            if self.config.output_dir is None:
                raise ValueError("需要给出图片路径或配置 output_dir")
            path = Path(self.config.output_dir) / 'conv_dof.png'
        graphs = {'err_est': self.graphs['dof_est']}
        if len(self.graphs['dof_exact']):
            graphs['err_exact'] = self.graphs['dof_exact']
        return plot_convergence(graphs, path, title='hp-FEM 收敛', log_x=True)
