"""
自适应计算配置

AdaptivityConfig 在构造时校验，之后不可修改，作为参数传给控制器。
支持 YAML / JSON 读写，configs/ 目录下提供算例模板。
"""

import json
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

_CONFIG_DIR = Path(__file__).parent / 'configs'


@dataclass(frozen=True)
class AdaptivityConfig:
    """hp 自适应配置"""

    # 求解
    solve_on_coarse_mesh: bool = False  # False: 参考解投影到粗空间
    init_ref_num: int = 1               # 初始一致细化次数
    p_init: int = 4                     # 初始多项式阶数

    # 标记
    threshold: float = 0.3
    strategy: int = 0                   # 0: 累积平方误差, 1: 相对最大误差, 2: 绝对误差
    cand_list: Tuple[str, ...] = ('HP_ANISO_H',)
    mesh_regularity: int = -1           # -1 表示不限制悬挂节点级别
    conv_exp: float = 1.0

    # 停止条件
    err_stop: float = 0.01              # 误差估计（%）
    ndof_stop: int = 60000
    max_iterations: Optional[int] = None

    # 选择器
    ref_order_increase: int = 1
    max_order: int = 9
    max_order_increase: int = 2
    error_weights: Tuple[float, float, float] = (2.0, 1.0, math.sqrt(2.0))  # h, p, aniso

    # 输出
    output_dir: Optional[str] = None

    def __post_init__(self):
        cand_list = self.cand_list
        if isinstance(cand_list, str):
            cand_list = (cand_list,)
        object.__setattr__(self, 'cand_list', tuple(str(c).upper() for c in cand_list))
        object.__setattr__(self, 'error_weights', tuple(float(w) for w in self.error_weights))
        self._validate()

    def _validate(self):
        from ..adaptivity.selectors import CandList

        if self.init_ref_num < 0:
            raise ValueError(f"init_ref_num 必须 >= 0: {self.init_ref_num}")
        if self.p_init < 1:
            raise ValueError(f"p_init 必须 >= 1: {self.p_init}")
        if self.strategy not in (0, 1, 2):
            raise ValueError(f"不支持的标记策略: {self.strategy}")
        if self.threshold <= 0 or (self.strategy in (0, 1) and self.threshold > 1):
            raise ValueError(f"threshold 超出范围: {self.threshold}")
        if self.mesh_regularity < -1:
            raise ValueError(f"mesh_regularity 必须 >= -1: {self.mesh_regularity}")
        if self.conv_exp <= 0:
            raise ValueError(f"conv_exp 必须为正: {self.conv_exp}")
        if self.err_stop <= 0:
            raise ValueError(f"err_stop 必须为正: {self.err_stop}")
        if self.ndof_stop <= 0:
            raise ValueError(f"ndof_stop 必须为正: {self.ndof_stop}")
        if self.max_iterations is not None and self.max_iterations < 1:
            raise ValueError(f"max_iterations 必须 >= 1: {self.max_iterations}")
        if self.ref_order_increase < 0:
            raise ValueError(f"ref_order_increase 必须 >= 0: {self.ref_order_increase}")
        if self.max_order < self.p_init:
            raise ValueError(f"max_order ({self.max_order}) 小于 p_init ({self.p_init})")
        if self.max_order_increase < 1:
            raise ValueError(f"max_order_increase 必须 >= 1: {self.max_order_increase}")
        if len(self.error_weights) != 3 or min(self.error_weights) <= 0:
            raise ValueError(f"error_weights 必须是三个正数: {self.error_weights}")
        known = {c.name for c in CandList}
        unknown = [c for c in self.cand_list if c not in known]
        if unknown:
            raise ValueError(f"未知的候选类型: {unknown}，可选: {sorted(known)}")

    def replace(self, **changes) -> 'AdaptivityConfig':
        """返回修改了部分字段的新配置"""
        data = self.to_dict()
        data.update(changes)
        return AdaptivityConfig(**data)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        data = asdict(self)
        data['cand_list'] = list(self.cand_list)
        data['error_weights'] = list(self.error_weights)
        return data

    def to_yaml(self, filepath: Union[str, Path]):
        """保存为YAML文件"""
        with open(filepath, 'w', encoding='utf-8') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True)

    def to_json(self, filepath: Union[str, Path]):
        """保存为JSON文件"""
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AdaptivityConfig':
        data = dict(data or {})
        names = {f.name for f in fields(cls)}
        unknown = set(data) - names
        if unknown:
            raise ValueError(f"未知的配置项: {sorted(unknown)}")
        for key in ('cand_list', 'error_weights'):
            if isinstance(data.get(key), list):
                data[key] = tuple(data[key])
        return cls(**data)

    @classmethod
    def from_yaml(cls, filepath: Union[str, Path]) -> 'AdaptivityConfig':
        """从YAML文件加载"""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    @classmethod
    def from_json(cls, filepath: Union[str, Path]) -> 'AdaptivityConfig':
        """从JSON文件加载"""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, filepath: Union[str, Path]) -> 'AdaptivityConfig':
        """按后缀选择格式"""
        suffix = Path(filepath).suffix.lower()
        if suffix in ('.yaml', '.yml'):
            return cls.from_yaml(filepath)
        elif suffix == '.json':
            return cls.from_json(filepath)
        raise ValueError(f"不支持的配置文件格式: {suffix}")


def load_config_template(name: str) -> AdaptivityConfig:
    """读取内置配置模板 configs/<name>.yaml"""
    path = _CONFIG_DIR / f'{name}.yaml'
    if not path.exists():
        available = sorted(p.stem for p in _CONFIG_DIR.glob('*.yaml'))
        raise ValueError(f"配置模板 {name} 不存在，可选: {available}")
    return AdaptivityConfig.from_yaml(path)
