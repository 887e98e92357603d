"""
hp 细化候选选择器

对被标记的单元枚举候选细化（阶数提升、几何剖分或两者结合，各向同性或各向异性），
在参考解上做局部 H1 投影得到每个候选的误差，按
    score = (log10 e0 - log10 e) / (dofs - dofs0) ** conv_exp
排序。得分相同时依次比较：新增自由度少者优先、剖分优先于升阶、各向同性优先、阶数低者优先。
"""

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..core.exceptions import NoCandidatesAvailable
from ..finite_elements.basis_functions import TRIANGLE, make_order
from ..finite_elements.mesh import CHILD_MAPS, Element, SplitKind
from ..finite_elements.quadrature import element_points_weights, points_for_order
from ..finite_elements.solution import Solution
from ..finite_elements.transformations import (IDENTITY_MAP, AffineMap, jacobian_det,
                                               map_to_physical, physical_gradients)

logger = logging.getLogger(__name__)


class CandList(Enum):
    """允许的候选集合"""
    P_ISO = 'P_ISO'            # 各向同性升阶
    P_ANISO = 'P_ANISO'        # 升阶（可各向异性）
    H_ISO = 'H_ISO'            # 各向同性剖分
    H_ANISO = 'H_ANISO'        # 剖分（可各向异性）
    HP_ISO = 'HP_ISO'          # 各向同性 hp
    HP_ANISO_H = 'HP_ANISO_H'  # 各向异性剖分、各向同性阶数
    HP_ANISO_P = 'HP_ANISO_P'  # 各向同性剖分、各向异性阶数
    HP_ANISO = 'HP_ANISO'      # 全部

    @classmethod
    def parse(cls, value) -> 'CandList':
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper().replace('-', '_')]
        except KeyError:
            raise ValueError(f"未知的候选类型: {value}") from None


# 候选种类
P_ISO_KIND = 'p_iso'
P_ANISO_KIND = 'p_aniso'
H_ISO_KIND = 'h_iso'
H_ANISO_KIND = 'h_aniso'
HP_ISO_KIND = 'hp_iso'
HP_ANISO_H_KIND = 'hp_aniso_h'
HP_ANISO_P_KIND = 'hp_aniso_p'
HP_ANISO_KIND = 'hp_aniso'

_KINDS_BY_LIST = {
    CandList.P_ISO: {P_ISO_KIND},
    CandList.P_ANISO: {P_ISO_KIND, P_ANISO_KIND},
    CandList.H_ISO: {H_ISO_KIND},
    CandList.H_ANISO: {H_ISO_KIND, H_ANISO_KIND},
    CandList.HP_ISO: {P_ISO_KIND, H_ISO_KIND, HP_ISO_KIND},
    CandList.HP_ANISO_H: {P_ISO_KIND, H_ISO_KIND, H_ANISO_KIND, HP_ISO_KIND, HP_ANISO_H_KIND},
    CandList.HP_ANISO_P: {P_ISO_KIND, P_ANISO_KIND, H_ISO_KIND, HP_ISO_KIND, HP_ANISO_P_KIND},
    CandList.HP_ANISO: {P_ISO_KIND, P_ANISO_KIND, H_ISO_KIND, H_ANISO_KIND, HP_ISO_KIND,
                        HP_ANISO_H_KIND, HP_ANISO_P_KIND, HP_ANISO_KIND},
}

_ANISO_SPLITS = (SplitKind.ANISO_H, SplitKind.ANISO_V)
_SPLIT_RANK = {SplitKind.ISO: 0, SplitKind.ANISO_H: 1, SplitKind.ANISO_V: 2}


@dataclass(frozen=True)
class Candidate:
    """一个单元的候选细化"""
    kind: str
    split: Optional[SplitKind]           # None 表示只改变阶数
    orders: Tuple[Tuple[int, int], ...]  # 每个子单元（或单元本身）的阶数
    dofs: int = 0
    added_dofs: int = 0
    error: float = 0.0
    score: float = 0.0

    @property
    def is_split(self):
        return self.split is not None

    @property
    def is_iso(self):
        return self.kind in (P_ISO_KIND, H_ISO_KIND, HP_ISO_KIND)

    def tie_key(self):
        return (self.added_dofs,
                0 if self.is_split else 1,
                0 if self.is_iso else 1,
                -1 if self.split is None else _SPLIT_RANK[self.split],
                tuple(q for order in self.orders for q in order),
                self.kind)


def candidate_dofs(shape, split: Optional[SplitKind], order) -> int:
    """候选的局部自由度数（子单元共享的边与顶点只计一次）"""
    px, py = order
    if shape == TRIANGLE:
        if split is None:
            return (px + 1) * (px + 2) // 2
        return (2 * px + 1) * (2 * px + 2) // 2
    if split is None:
        return (px + 1) * (py + 1)
    if split == SplitKind.ISO:
        return (2 * px + 1) * (2 * py + 1)
    if split == SplitKind.ANISO_H:
        return (px + 1) * (2 * py + 1)
    return (2 * px + 1) * (py + 1)


class _RegionProjector:
    """
    参考解在单元及其子区域上的局部 H1 投影误差

    参考解在粗单元的参考网格子单元上采样；区域由“区域参考坐标 -> 单元参考坐标”的仿射映射给出，
    结果按 (区域, 阶数) 缓存。
    """

    def __init__(self, fine: Solution, element: Element, coarse_coords: np.ndarray, n_points: int,
                 shapeset):
        self.shape = element.shape
        self.shapeset = shapeset
        self._cache: Dict[tuple, float] = {}
        self.samples = []
        for sub_id, sub_map in fine.mesh.active_descendants(element.id):
            pts, wts = element_points_weights(self.shape, n_points)
            ref = sub_map.apply(pts)
            _, J = map_to_physical(coarse_coords, self.shape, ref)
            w = wts * abs(sub_map.det) * np.abs(jacobian_det(J))
            values, grads = fine.evaluate_element(sub_id, pts)
            self.samples.append((ref, J, w, values, grads, ref.mean(axis=0)))

    def _inside(self, region: AffineMap, point) -> bool:
        p = region.inverse().apply(point)[0]
        eps = 1e-9
        if self.shape == TRIANGLE:
            return p[0] >= -1 - eps and p[1] >= -1 - eps and p[0] + p[1] <= eps
        return bool(np.all(np.abs(p) <= 1 + eps))

    def error_squared(self, region_key, region: AffineMap, order) -> float:
        key = (region_key, order)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        inv = region.inverse()
        A = region.matrix
        edge_orders = self.shapeset.full_edge_orders(self.shape, order)
        parts = [s for s in self.samples if self._inside(region, s[5][None, :])]
        M = None
        rhs = None
        evaluated = []
        for ref, J, w, values, grads, _ in parts:
            phi, dphi = self.shapeset.evaluate(self.shape, order, edge_orders, inv.apply(ref))
            basis_grads = physical_gradients(dphi, J @ A)
            Mi = (phi * w) @ phi.T + np.einsum('iqd,jqd,q->ij', basis_grads, basis_grads, w)
            bi = phi @ (w * values) + np.einsum('iqd,qd,q->i', basis_grads, grads, w)
            M = Mi if M is None else M + Mi
            rhs = bi if rhs is None else rhs + bi
            evaluated.append((phi, basis_grads, w, values, grads))

        coeffs = np.linalg.solve(M, rhs)
        err = 0.0
        for phi, basis_grads, w, values, grads in evaluated:
            dv = values - coeffs @ phi
            dg = grads - np.einsum('n,nqd->qd', coeffs, basis_grads)
            err += float(np.sum(w * (dv ** 2 + np.sum(dg ** 2, axis=1))))
        self._cache[key] = err
        return err


class RefinementSelector:
    """
    hp 候选选择器

    参数:
        cand_list: 允许的候选集合（CandList 或其名称，可多个，取并集）
        conv_exp: 得分中自由度增量的指数
        max_order: 最高多项式阶数
        max_order_increase: 单次升阶的最大增量
        error_weights: (h, p, aniso) 误差权重，剖分候选的误差乘以相应权重
    """

    def __init__(self, cand_list: Iterable = (CandList.HP_ANISO_H,), conv_exp: float = 1.0,
                 max_order: int = 9, max_order_increase: int = 2,
                 error_weights: Sequence[float] = (2.0, 1.0, math.sqrt(2.0)), shapeset=None):
        if isinstance(cand_list, (str, CandList)):
            cand_list = (cand_list,)
        self.cand_list = tuple(CandList.parse(c) for c in cand_list)
        self.kinds = set()
        for c in self.cand_list:
            self.kinds |= _KINDS_BY_LIST[c]
        if not self.kinds:
            raise NoCandidatesAvailable("候选集合为空")
        self.conv_exp = conv_exp
        self.max_order = max_order
        self.max_order_increase = max_order_increase
        self.weight_h, self.weight_p, self.weight_aniso = error_weights
        if shapeset is None:
            from ..finite_elements.basis_functions import shapeset as default_shapeset
            shapeset = default_shapeset
        self.shapeset = shapeset

    # ---- 候选枚举 ----

    def _cap(self, q):
        return max(1, min(q, self.max_order))

    def _son_range(self, p):
        start = max(1, (p + 1) // 2)
        last = min(start + self.max_order_increase, p)
        return range(start, last + 1)

    def generate_candidates(self, element: Element, order) -> List[Candidate]:
        """枚举允许的候选（不含当前状态），顺序固定"""
        shape = element.shape
        px, py = make_order(order, shape)
        current = (px, py)
        is_quad = shape != TRIANGLE
        inc = self.max_order_increase
        result: List[Candidate] = []
        seen = set()

        def add(kind, split, son_order, n_sons):
            son_order = make_order(son_order, shape)
            if split is None and son_order == current:
                return
            key = (split, son_order)
            if key in seen:
                return
            seen.add(key)
            result.append(Candidate(kind, split, (son_order,) * n_sons))

        if P_ISO_KIND in self.kinds:
            for i in range(1, inc + 1):
                add(P_ISO_KIND, None, (self._cap(px + i), self._cap(py + i)), 1)
        if P_ANISO_KIND in self.kinds and is_quad:
            for i in range(inc + 1):
                for j in range(inc + 1):
                    if i != j:
                        add(P_ANISO_KIND, None, (self._cap(px + i), self._cap(py + j)), 1)

        splits_iso = [SplitKind.ISO]
        splits_aniso = list(_ANISO_SPLITS) if is_quad else []
        n_sons = {SplitKind.ISO: 4, SplitKind.ANISO_H: 2, SplitKind.ANISO_V: 2}

        if H_ISO_KIND in self.kinds:
            add(H_ISO_KIND, SplitKind.ISO, current, 4)
        if H_ANISO_KIND in self.kinds:
            for split in splits_aniso:
                add(H_ANISO_KIND, split, current, 2)

        rx, ry = self._son_range(px), self._son_range(py)
        iso_steps = range(min(len(rx), len(ry)))
        for kind, splits, aniso_orders in (
                (HP_ISO_KIND, splits_iso, False),
                (HP_ANISO_H_KIND, splits_aniso, False),
                (HP_ANISO_P_KIND, splits_iso, True),
                (HP_ANISO_KIND, splits_aniso, True)):
            if kind not in self.kinds:
                continue
            for split in splits:
                if aniso_orders and is_quad:
                    son_orders = [(qx, qy) for qx in rx for qy in ry]
                else:
                    son_orders = [(rx[k], ry[k]) for k in iso_steps]
                for son_order in son_orders:
                    add(kind, split, son_order, n_sons[split])
        return result

    # ---- 评估 ----

    def _regions(self, element: Element, split: Optional[SplitKind]):
        if split is None:
            return [(('whole',), IDENTITY_MAP)]
        maps = CHILD_MAPS[(element.shape, split)]
        return [((split.value, k), m) for k, m in enumerate(maps)]

    def _weight(self, split):
        if split is None:
            return self.weight_p
        if split == SplitKind.ISO:
            return self.weight_h
        return self.weight_aniso

    def _projector(self, element, order, fine: Solution):
        top = max(max(order), max(max(fine.space.get_element_order(sub))
                                  for sub, _ in fine.mesh.active_descendants(element.id)))
        n_points = points_for_order(min(top, self.max_order) + self.max_order_increase)
        coords = np.array([fine.mesh.vertices[v] for v in element.vertices])
        return _RegionProjector(fine, element, coords, n_points, self.shapeset)

    def evaluate_candidate(self, projector, element, candidate: Candidate) -> float:
        err = 0.0
        for (region_key, region), son_order in zip(self._regions(element, candidate.split),
                                                   candidate.orders):
            err += projector.error_squared(region_key, region, son_order)
        return math.sqrt(max(err, 0.0)) * self._weight(candidate.split)

    def _score(self, element: Element, current, fine: Solution):
        """返回 (e0, dofs0, 已评估的候选)"""
        shape = element.shape
        projector = self._projector(element, current, fine)
        e0 = self.evaluate_candidate(projector, element, Candidate('none', None, (current,)))
        dofs0 = candidate_dofs(shape, None, current)
        tiny = 1e-300

        scored = []
        for cand in self.generate_candidates(element, current):
            error = self.evaluate_candidate(projector, element, cand)
            dofs = candidate_dofs(shape, cand.split, cand.orders[0])
            added = dofs - dofs0
            if error < e0 and added > 0:
                score = (math.log10(max(e0, tiny)) - math.log10(max(error, tiny))) / added ** self.conv_exp
            else:
                score = 0.0
            scored.append(replace(cand, dofs=dofs, added_dofs=added, error=error, score=score))
        return e0, dofs0, scored

    def rank_candidates(self, element: Element, order, fine: Solution) -> List[Candidate]:
        """
        评估并排序增加自由度的候选，最优者在前

        不增加自由度的候选不参与排序，自由度数因此单调不减。
        """
        current = make_order(order, element.shape)
        if not self.generate_candidates(element, current):
            return []
        _, _, scored = self._score(element, current, fine)

        improving = sorted((c for c in scored if c.score > 0),
                           key=lambda c: (-c.score,) + c.tie_key())
        # 没有候选能降低误差时，按固定顺序退回到增加自由度的候选
        growing = sorted((c for c in scored if c.score <= 0 and c.added_dofs > 0),
                         key=lambda c: c.tie_key()[1:] + (c.added_dofs,))
        return improving + growing

    def select_candidate(self, element: Element, order, fine: Solution) -> Candidate:
        """最优候选；允许的候选都不增加自由度时返回保持现状的候选"""
        ranked = self.rank_candidates(element, order, fine)
        if ranked:
            best = ranked[0]
        else:
            current = make_order(order, element.shape)
            projector = self._projector(element, current, fine)
            e0 = self.evaluate_candidate(projector, element, Candidate('none', None, (current,)))
            best = Candidate('none', None, (current,),
                             dofs=candidate_dofs(element.shape, None, current), error=e0)
        logger.debug("单元 %d: 选择 %s %s -> %s (score=%.4g, +%d dofs)", element.id, best.kind,
                     best.split.value if best.split else 'p', best.orders[0], best.score,
                     best.added_dofs)
        return best
