"""
分层自适应网格

所有单元（活动单元与历史单元）保存在以稳定整数ID索引的数组中，
父子关系以ID表示。边按中点二分形成边树，相邻单元共享中点，
从而可以追踪任意级别的悬挂节点。
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..core.exceptions import RegularityViolation
from .basis_functions import QUADRILATERAL, TRIANGLE, local_edges, shape_of
from .transformations import IDENTITY_MAP, AffineMap

logger = logging.getLogger(__name__)

EdgeKey = Tuple[int, int]


def edge_key(a: int, b: int) -> EdgeKey:
    return (a, b) if a < b else (b, a)


class SplitKind(Enum):
    """单元几何细化方式"""
    ISO = 'iso'          # 四个子单元
    ANISO_H = 'aniso_h'  # 水平切分：下、上两个子单元
    ANISO_V = 'aniso_v'  # 竖直切分：左、右两个子单元


# 各细化方式需要二分的局部边
_SPLIT_EDGES = {
    (QUADRILATERAL, SplitKind.ISO): (0, 1, 2, 3),
    (QUADRILATERAL, SplitKind.ANISO_H): (1, 3),
    (QUADRILATERAL, SplitKind.ANISO_V): (0, 2),
    (TRIANGLE, SplitKind.ISO): (0, 1, 2),
}

# 子单元角点在父单元参考坐标下的位置（对应子单元参考顶点 (-1,-1), (1,-1), (-1,1)）
_CHILD_CORNERS = {
    (QUADRILATERAL, SplitKind.ISO): (
        ((-1, -1), (0, -1), (-1, 0)),
        ((0, -1), (1, -1), (0, 0)),
        ((0, 0), (1, 0), (0, 1)),
        ((-1, 0), (0, 0), (-1, 1)),
    ),
    (QUADRILATERAL, SplitKind.ANISO_H): (
        ((-1, -1), (1, -1), (-1, 0)),
        ((-1, 0), (1, 0), (-1, 1)),
    ),
    (QUADRILATERAL, SplitKind.ANISO_V): (
        ((-1, -1), (0, -1), (-1, 1)),
        ((0, -1), (1, -1), (0, 1)),
    ),
    (TRIANGLE, SplitKind.ISO): (
        ((-1, -1), (0, -1), (-1, 0)),
        ((0, -1), (1, -1), (0, 0)),
        ((-1, 0), (0, 0), (-1, 1)),
        ((0, -1), (0, 0), (-1, 0)),
    ),
}

CHILD_MAPS = {key: tuple(AffineMap.from_corners(*corners) for corners in value)
              for key, value in _CHILD_CORNERS.items()}


@dataclass
class Element:
    """网格单元（细化树中的节点）"""
    id: int
    vertices: List[int]
    marker: int = 0
    level: int = 0
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    active: bool = True
    split: Optional[SplitKind] = None
    ref_map: AffineMap = IDENTITY_MAP  # 本单元参考坐标 -> 父单元参考坐标

    @property
    def shape(self):
        return shape_of(len(self.vertices))

    @property
    def is_triangle(self):
        return len(self.vertices) == 3

    @property
    def is_quad(self):
        return len(self.vertices) == 4

    def edge_vertices(self, i) -> Tuple[int, int]:
        """第 i 条局部边的 (起点, 终点) 顶点ID"""
        a, b = local_edges(self.shape)[i]
        return self.vertices[a], self.vertices[b]

    def edge_keys(self) -> List[EdgeKey]:
        return [edge_key(*self.edge_vertices(i)) for i in range(len(self.vertices))]


class Mesh:
    """分层网格：单元数组、顶点坐标、中点注册表、边树与边界标记"""

    def __init__(self, vertices: Sequence[Sequence[float]],
                 elements: Iterable[Tuple[Sequence[int], int]],
                 boundaries: Optional[Dict[EdgeKey, int]] = None,
                 max_regularity: int = -1):
        self.vertices: List[np.ndarray] = [np.asarray(v, dtype=float) for v in vertices]
        self.elements: List[Element] = []
        self.boundaries: Dict[EdgeKey, int] = {}
        self.curves: Dict[EdgeKey, float] = {}
        self.max_regularity = max_regularity

        self._midpoints: Dict[EdgeKey, int] = {}
        self._midpoint_of: Dict[int, EdgeKey] = {}
        self._edge_parent: Dict[EdgeKey, EdgeKey] = {}
        self._edge_children: Dict[EdgeKey, Tuple[EdgeKey, EdgeKey]] = {}
        self._edge_elements: Dict[EdgeKey, Set[int]] = {}

        for verts, marker in elements:
            self._add_element(list(verts), marker)
        for key, marker in (boundaries or {}).items():
            self.boundaries[edge_key(*key)] = marker

    # ---- 基本查询 ----

    @property
    def num_vertices(self):
        return len(self.vertices)

    def get_element(self, element_id: int) -> Element:
        if element_id < 0 or element_id >= len(self.elements):
            raise ValueError(f"单元ID {element_id} 超出范围")
        return self.elements[element_id]

    def active_elements(self) -> List[Element]:
        return [e for e in self.elements if e.active]

    def active_ids(self) -> List[int]:
        return [e.id for e in self.elements if e.active]

    def num_active_elements(self):
        return sum(1 for e in self.elements if e.active)

    def element_coords(self, element_id: int) -> np.ndarray:
        return np.array([self.vertices[v] for v in self.elements[element_id].vertices])

    def vertex_coords(self, vertex_id: int) -> np.ndarray:
        return self.vertices[vertex_id]

    def copy(self) -> 'Mesh':
        """深拷贝（单元ID保持不变），用于构造参考网格"""
        return copy.deepcopy(self)

    # ---- 边拓扑 ----

    def is_active_edge(self, key: EdgeKey) -> bool:
        return bool(self._edge_elements.get(key))

    def edge_elements(self, key: EdgeKey) -> Set[int]:
        return set(self._edge_elements.get(key, ()))

    def edge_parent(self, key: EdgeKey) -> Optional[EdgeKey]:
        return self._edge_parent.get(key)

    def edge_children(self, key: EdgeKey) -> Optional[Tuple[EdgeKey, EdgeKey]]:
        return self._edge_children.get(key)

    def midpoint(self, key: EdgeKey) -> Optional[int]:
        return self._midpoints.get(key)

    def hanging_master(self, vertex_id: int) -> Optional[EdgeKey]:
        """若顶点位于某条活动边的内部（悬挂节点），返回该边，否则返回 None"""
        cur = self._midpoint_of.get(vertex_id)
        while cur is not None:
            if self._edge_elements.get(cur):
                return self.edge_master(cur)[0]
            cur = self._edge_parent.get(cur)
        return None

    def boundary_marker(self, key: EdgeKey) -> Optional[int]:
        return self.boundaries.get(key)

    def is_boundary_edge(self, key: EdgeKey) -> bool:
        return key in self.boundaries

    def edge_master(self, key: EdgeKey) -> Tuple[EdgeKey, int]:
        """
        返回包含该边的最大活动边及其相对深度

        若某个祖先边属于活动单元，则该边是受约束的子边；否则它本身就是主边（深度 0）。
        """
        depth = 0
        cur = key
        while True:
            parent = self._edge_parent.get(cur)
            if parent is None:
                return key, 0
            depth += 1
            if self._edge_elements.get(parent):
                return parent, depth
            cur = parent

    def has_active_descendants(self, key: EdgeKey) -> bool:
        children = self._edge_children.get(key)
        if children is None:
            return False
        return any(self._edge_elements.get(c) or self.has_active_descendants(c) for c in children)

    def hanging_level(self, key: EdgeKey) -> int:
        """主边上悬挂节点的级别（最深活动子边的深度）"""
        children = self._edge_children.get(key)
        if children is None:
            return 0
        level = 0
        for child in children:
            if self._edge_elements.get(child):
                level = max(level, 1)
            sub = self.hanging_level(child)
            if sub > 0:
                level = max(level, sub + 1)
        return level

    def max_hanging_level(self) -> int:
        level = 0
        for key, owners in self._edge_elements.items():
            if owners and self.edge_master(key)[1] == 0:
                level = max(level, self.hanging_level(key))
        return level

    def edge_parameter(self, key: EdgeKey, vertex_id: int) -> float:
        """顶点在边 key（从 key[0] 指向 key[1]）上的参数位置 t ∈ [0, 1]"""
        a = self.vertices[key[0]]
        b = self.vertices[key[1]]
        d = b - a
        return float(np.dot(self.vertices[vertex_id] - a, d) / np.dot(d, d))

    # ---- 细化 ----

    def refine_element(self, element_id: int, split: SplitKind = SplitKind.ISO) -> List[int]:
        """
        细化单个活动单元，返回子单元ID

        若细化后悬挂节点级别超过 max_regularity（-1 表示不限制），抛出 RegularityViolation。
        """
        e = self.get_element(element_id)
        if not e.active:
            raise ValueError(f"单元 {element_id} 不是活动单元")
        if (e.shape, split) not in _SPLIT_EDGES:
            raise ValueError(f"单元 {element_id} ({e.shape}) 不支持细化方式 {split.value}")
        if self.max_regularity >= 0:
            level = self.split_hanging_level(element_id, split)
            if level > self.max_regularity:
                raise RegularityViolation(
                    f"细化会产生 {level} 级悬挂节点，超过允许的 {self.max_regularity} 级",
                    element_id=element_id)
        return self._split(e, split)

    def split_hanging_level(self, element_id: int, split: SplitKind = SplitKind.ISO) -> int:
        """细化该单元后，被二分的边上产生的最大悬挂节点级别"""
        e = self.elements[element_id]
        level = 0
        for i in _SPLIT_EDGES[(e.shape, split)]:
            key = edge_key(*e.edge_vertices(i))
            if key in self.boundaries or self.has_active_descendants(key):
                continue
            _, depth = self.edge_master(key)
            level = max(level, depth + 1)
        return level

    def can_refine(self, element_id: int, split: SplitKind = SplitKind.ISO) -> bool:
        if self.max_regularity < 0:
            return True
        return self.split_hanging_level(element_id, split) <= self.max_regularity

    def refine_all_elements(self, split: SplitKind = SplitKind.ISO):
        """一致细化所有活动单元（不改变悬挂节点级别，不做正则性检查）"""
        for e in self.active_elements():
            if (e.shape, split) in _SPLIT_EDGES:
                self._split(e, split)
            else:
                self._split(e, SplitKind.ISO)

    def _split(self, e: Element, split: SplitKind) -> List[int]:
        v = e.vertices
        if e.is_quad:
            if split == SplitKind.ISO:
                m01, m12, m23, m30 = (self._get_midpoint(v[i], v[(i + 1) % 4]) for i in range(4))
                center = self._add_vertex(np.mean([self.vertices[i] for i in v], axis=0))
                children = [
                    [v[0], m01, center, m30],
                    [m01, v[1], m12, center],
                    [center, m12, v[2], m23],
                    [m30, center, m23, v[3]],
                ]
            elif split == SplitKind.ANISO_H:
                m12 = self._get_midpoint(v[1], v[2])
                m30 = self._get_midpoint(v[3], v[0])
                children = [[v[0], v[1], m12, m30], [m30, m12, v[2], v[3]]]
            else:
                m01 = self._get_midpoint(v[0], v[1])
                m23 = self._get_midpoint(v[2], v[3])
                children = [[v[0], m01, m23, v[3]], [m01, v[1], v[2], m23]]
        else:
            m01 = self._get_midpoint(v[0], v[1])
            m12 = self._get_midpoint(v[1], v[2])
            m20 = self._get_midpoint(v[2], v[0])
            children = [
                [v[0], m01, m20],
                [m01, v[1], m12],
                [m20, m12, v[2]],
                [m01, m12, m20],
            ]

        self._deactivate(e)
        e.split = split
        maps = CHILD_MAPS[(e.shape, split)]
        ids = []
        for verts, ref_map in zip(children, maps):
            child = self._add_element(verts, e.marker, parent=e.id, ref_map=ref_map)
            ids.append(child.id)
        e.children = ids
        return ids

    def _add_element(self, verts: List[int], marker: int, parent: Optional[int] = None,
                     ref_map: AffineMap = IDENTITY_MAP) -> Element:
        level = 0 if parent is None else self.elements[parent].level + 1
        e = Element(id=len(self.elements), vertices=list(verts), marker=marker,
                    level=level, parent=parent, ref_map=ref_map)
        self.elements.append(e)
        for key in e.edge_keys():
            self._edge_elements.setdefault(key, set()).add(e.id)
        return e

    def _deactivate(self, e: Element):
        e.active = False
        for key in e.edge_keys():
            owners = self._edge_elements.get(key)
            if owners is not None:
                owners.discard(e.id)
                if not owners:
                    del self._edge_elements[key]

    def _add_vertex(self, coord) -> int:
        self.vertices.append(np.asarray(coord, dtype=float))
        return len(self.vertices) - 1

    def _get_midpoint(self, a: int, b: int) -> int:
        key = edge_key(a, b)
        mid = self._midpoints.get(key)
        if mid is not None:
            return mid
        mid = self._add_vertex((self.vertices[a] + self.vertices[b]) / 2.0)
        self._midpoints[key] = mid
        self._midpoint_of[mid] = key
        children = (edge_key(key[0], mid), edge_key(mid, key[1]))
        self._edge_children[key] = children
        for child in children:
            self._edge_parent[child] = key
        marker = self.boundaries.get(key)
        if marker is not None:
            for child in children:
                self.boundaries[child] = marker
        return mid

    # ---- 祖先映射 ----

    def child_map(self, element_id: int) -> AffineMap:
        return self.elements[element_id].ref_map

    def ancestor_map(self, element_id: int,
                     stop: Callable[[int], bool]) -> Tuple[int, AffineMap]:
        """
        沿父链向上，直到 stop(ancestor_id) 为真，返回该祖先及复合映射
        （本单元参考坐标 -> 祖先参考坐标）
        """
        ref_map = IDENTITY_MAP
        cur = self.elements[element_id]
        while not stop(cur.id):
            if cur.parent is None:
                raise ValueError(f"单元 {element_id} 没有满足条件的祖先")
            ref_map = ref_map.then(cur.ref_map)
            cur = self.elements[cur.parent]
        return cur.id, ref_map

    def active_descendants(self, element_id: int) -> List[Tuple[int, AffineMap]]:
        """活动后代单元及其参考坐标到本单元参考坐标的映射（单元本身活动时返回自身）"""
        e = self.elements[element_id]
        if e.active:
            return [(element_id, IDENTITY_MAP)]
        result = []
        for child_id in e.children:
            child_map = self.elements[child_id].ref_map
            for desc_id, desc_map in self.active_descendants(child_id):
                result.append((desc_id, desc_map.then(child_map)))
        return result

    def get_statistics(self) -> Dict[str, int]:
        return {
            'n_elements': len(self.elements),
            'n_active': self.num_active_elements(),
            'n_vertices': self.num_vertices,
            'max_level': max((e.level for e in self.elements if e.active), default=0),
            'max_hanging_level': self.max_hanging_level(),
        }
