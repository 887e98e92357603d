"""
L 形区域算例 - 重入角处的奇异解

    -Δu = 0   于 Ω = (-1,1)^2 \\ [-1,0]x[-1,0]
       u = g  于 ∂Ω

解析解（极坐标，角度从 y 轴起算）:
    u = r^{2/3} sin(2θ/3 + π/3),  θ = atan2(x, y)

整个边界取本质边界条件，边界值由解析解给出。

用法:
    python -m hpfem.benchmarks.lshape --output-dir results/lshape
"""

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from ..adaptivity.adaptive_solver import AdaptiveProblem, AdaptivityController, AdaptivityResult
from ..core.config import AdaptivityConfig, load_config_template
from ..finite_elements.assembly import WeakForm, laplace_form
from ..finite_elements.boundary_conditions import BCType
from ..finite_elements.mesh import Mesh
from ..finite_elements.mesh_io import load_mesh

logger = logging.getLogger(__name__)

MESH_FILE = Path(__file__).parent / 'lshape.mesh'


def exact_value(x, y):
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    r = np.sqrt(x * x + y * y)
    phi = 2.0 / 3.0 * np.arctan2(x, y) + np.pi / 3.0
    return np.power(r, 2.0 / 3.0) * np.sin(phi)


def exact_gradient(x, y):
    """解析解梯度，在原点处奇异（取 0）"""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    r = np.sqrt(x * x + y * y)
    safe = np.where(r > 0.0, r, 1.0)
    phi = 2.0 / 3.0 * np.arctan2(x, y) + np.pi / 3.0
    a = 2.0 / 3.0 * np.power(safe, -1.0 / 3.0) * np.sin(phi) / safe
    b = 2.0 / 3.0 * np.power(safe, 2.0 / 3.0) * np.cos(phi) / (safe * safe)
    dx = np.where(r > 0.0, a * x + b * y, 0.0)
    dy = np.where(r > 0.0, a * y - b * x, 0.0)
    return dx, dy


def bc_types(marker: int) -> BCType:
    return BCType.ESSENTIAL


def bc_values(marker: int, x: float, y: float) -> float:
    return float(exact_value(x, y))


def laplace_weak_form() -> WeakForm:
    wf = WeakForm()
    wf.add_matrix_form(laplace_form, sym=True)
    return wf


def build_problem(mesh: Optional[Mesh] = None) -> AdaptiveProblem:
    """组装 L 形算例；mesh 为空时读取内置网格"""
    if mesh is None:
        mesh = load_mesh(MESH_FILE)
    return AdaptiveProblem(mesh=mesh, bc_types=bc_types, bc_values=bc_values,
                           weak_form=laplace_weak_form(),
                           exact_value=exact_value, exact_gradient=exact_gradient)


def run(config: Optional[AdaptivityConfig] = None, mesh: Optional[Mesh] = None) -> AdaptivityResult:
    """用给定配置（默认 lshape 模板）运行自适应"""
    config = config or load_config_template('lshape')
    controller = AdaptivityController(build_problem(mesh), config)
    return controller.run()


def _parse_args(argv):
    parser = argparse.ArgumentParser(description="L 形区域 hp 自适应算例")
    parser.add_argument('--config', type=str, default=None,
                        help='配置文件 (.yaml / .json)，默认使用内置 lshape 模板')
    parser.add_argument('--output-dir', type=str, default=None, help='收敛曲线输出目录')
    parser.add_argument('--err-stop', type=float, default=None, help='误差估计停止阈值 (%%)')
    parser.add_argument('--ndof-stop', type=int, default=None, help='自由度停止阈值')
    parser.add_argument('--max-iterations', type=int, default=None, help='最大自适应步数')
    parser.add_argument('--plot', action='store_true', help='保存收敛图 (需要 matplotlib)')
    parser.add_argument('-v', '--verbose', action='store_true', help='输出调试信息')
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s: %(message)s")

    config = AdaptivityConfig.from_file(args.config) if args.config else load_config_template('lshape')
    overrides = {}
    if args.output_dir is not None:
        overrides['output_dir'] = args.output_dir
    if args.err_stop is not None:
        overrides['err_stop'] = args.err_stop
    if args.ndof_stop is not None:
        overrides['ndof_stop'] = args.ndof_stop
    if args.max_iterations is not None:
        overrides['max_iterations'] = args.max_iterations
    if overrides:
        config = config.replace(**overrides)

    controller = AdaptivityController(build_problem(), config)
    result = controller.run()

    logger.info("总运行时间: %g s", result.cpu_time)
    if result.err_exact is not None:
        logger.info("最终: ndof = %d, err_est = %g%%, err_exact = %g%%",
                    result.ndof, result.err_est, result.err_exact)
    if args.plot:
        if config.output_dir is None:
            logger.warning("未指定 --output-dir，跳过收敛图")
        else:
            controller.plot()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
