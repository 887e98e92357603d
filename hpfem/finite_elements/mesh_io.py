"""
网格文件读取

支持三种格式（按后缀选择）：
- .yaml / .yml : YAML 映射，键为 vertices / elements / boundaries / curves
- .json        : 同上的 JSON 版本
- .mesh        : 花括号格式，支持 # 注释与数值变量定义，例如

    a = 1.0
    vertices = { { 0, -1 }, { a, -1 }, ... }
    elements = { { 0, 1, 4, 3, 0 }, ... }
    boundaries = { { 0, 1, 1 }, ... }
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Union

import numpy as np
import yaml

from ..core.exceptions import MalformedMeshFile
from .basis_functions import local_edges, shape_of
from .mesh import Mesh, edge_key

logger = logging.getLogger(__name__)

_ASSIGNMENT = re.compile(r'\s*([A-Za-z_]\w*)\s*=\s*')
_IDENTIFIER = re.compile(r'\b[A-Za-z_]\w*\b')
_SECTIONS = ('vertices', 'elements', 'boundaries', 'curves')


def load_mesh(path: Union[str, Path], max_regularity: int = -1) -> Mesh:
    """读取网格文件并校验结构"""
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise MalformedMeshFile(f"无法读取网格文件 {path}: {e}") from e

    suffix = path.suffix.lower()
    try:
        if suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(text)
        elif suffix == '.json':
            data = json.loads(text)
        elif suffix == '.mesh':
            data = parse_brace_format(text)
        else:
            raise MalformedMeshFile(f"不支持的网格文件格式: {suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise MalformedMeshFile(f"网格文件 {path} 语法错误: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMeshFile(f"网格文件 {path} 顶层必须是映射")
    mesh = build_mesh(data, max_regularity=max_regularity)
    logger.info("读取网格 %s: %d 个顶点, %d 个单元", path.name, mesh.num_vertices,
                mesh.num_active_elements())
    return mesh


def parse_brace_format(text: str) -> Dict[str, Any]:
    """解析花括号格式的网格描述"""
    text = re.sub(r'#[^\n]*', '', text)
    variables: Dict[str, float] = {}
    sections: Dict[str, Any] = {}
    pos = 0
    while text[pos:].strip():
        m = _ASSIGNMENT.match(text, pos)
        if m is None:
            raise MalformedMeshFile(f"无法解析网格文件第 {text.count(chr(10), 0, pos) + 1} 行附近的内容")
        name = m.group(1)
        pos = m.end()
        if pos < len(text) and text[pos] == '{':
            end = _matching_brace(text, pos)
            block = text[pos:end + 1]
            pos = end + 1
            sections[name] = _parse_block(block, variables)
        else:
            end = text.find('\n', pos)
            end = len(text) if end < 0 else end
            expr = text[pos:end].strip().rstrip(';')
            pos = end
            variables[name] = _evaluate_scalar(expr, variables)
    return sections


def _matching_brace(text, start):
    depth = 0
    for i in range(start, len(text)):
        if text[i] == '{':
            depth += 1
        elif text[i] == '}':
            depth -= 1
            if depth == 0:
                return i
    raise MalformedMeshFile("花括号不匹配")


def _substitute(expr, variables):
    def repl(m):
        name = m.group(0)
        if name not in variables:
            raise MalformedMeshFile(f"未定义的变量: {name}")
        return repr(variables[name])
    return _IDENTIFIER.sub(repl, expr)


def _evaluate_scalar(expr, variables):
    expr = _substitute(expr, variables).replace(' ', '')
    sign = 1.0
    while expr.startswith(('-', '+')):
        if expr[0] == '-':
            sign = -sign
        expr = expr[1:]
    try:
        return sign * float(expr)
    except ValueError as e:
        raise MalformedMeshFile(f"无法解析数值: {expr}") from e


def _parse_block(block, variables):
    body = _substitute(block, variables).replace('{', '[').replace('}', ']')
    body = re.sub(r'--', '', body)
    try:
        return yaml.safe_load(body)
    except yaml.YAMLError as e:
        raise MalformedMeshFile(f"无法解析网格数据块: {e}") from e


def _as_int(value, what):
    if isinstance(value, bool) or not float(value).is_integer():
        raise MalformedMeshFile(f"{what} 必须是整数: {value}")
    return int(value)


def build_mesh(data: Dict[str, Any], max_regularity: int = -1) -> Mesh:
    """校验网格数据并构造 Mesh"""
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        logger.debug("忽略网格文件中的未知段: %s", sorted(unknown))
    raw_vertices = data.get('vertices')
    raw_elements = data.get('elements')
    if not raw_vertices or not raw_elements:
        raise MalformedMeshFile("网格文件必须包含 vertices 与 elements")

    try:
        vertices = np.array(raw_vertices, dtype=float)
    except (TypeError, ValueError) as e:
        raise MalformedMeshFile(f"顶点坐标格式错误: {e}") from e
    if vertices.ndim != 2 or vertices.shape[1] != 2:
        raise MalformedMeshFile("每个顶点必须有两个坐标")
    n_vertices = len(vertices)

    elements: List[tuple] = []
    edge_count: Dict[tuple, int] = {}
    for idx, raw in enumerate(raw_elements):
        if not isinstance(raw, (list, tuple)) or len(raw) not in (4, 5):
            raise MalformedMeshFile(f"单元 {idx} 必须是 3 或 4 个顶点加一个标记")
        verts = [_as_int(v, f"单元 {idx} 的顶点") for v in raw[:-1]]
        marker = _as_int(raw[-1], f"单元 {idx} 的标记")
        for v in verts:
            if v < 0 or v >= n_vertices:
                raise MalformedMeshFile(f"单元 {idx} 引用了不存在的顶点 {v}")
        if len(set(verts)) != len(verts):
            raise MalformedMeshFile(f"单元 {idx} 含重复顶点")
        area = _signed_area(vertices[verts])
        if abs(area) < 1e-14:
            raise MalformedMeshFile(f"单元 {idx} 退化（面积为零）")
        if area < 0:
            logger.debug("单元 %d 为顺时针顺序，已反转", idx)
            verts = [verts[0]] + verts[:0:-1]
        elements.append((verts, marker))
        for a, b in local_edges(shape_of(len(verts))):
            key = edge_key(verts[a], verts[b])
            edge_count[key] = edge_count.get(key, 0) + 1

    for key, count in edge_count.items():
        if count > 2:
            raise MalformedMeshFile(f"边 {key} 被 {count} 个单元共享")
    boundary_edges = {key for key, count in edge_count.items() if count == 1}

    boundaries = {}
    for idx, raw in enumerate(data.get('boundaries') or []):
        if not isinstance(raw, (list, tuple)) or len(raw) != 3:
            raise MalformedMeshFile(f"边界 {idx} 必须是 [顶点, 顶点, 标记]")
        a, b, marker = (_as_int(v, f"边界 {idx}") for v in raw)
        for v in (a, b):
            if v < 0 or v >= n_vertices:
                raise MalformedMeshFile(f"边界 {idx} 引用了不存在的顶点 {v}")
        key = edge_key(a, b)
        if key not in boundary_edges:
            raise MalformedMeshFile(f"边界 {idx} ({a}, {b}) 不是网格的边界边")
        boundaries[key] = marker

    unmarked = sorted(boundary_edges - set(boundaries))
    if unmarked:
        raise MalformedMeshFile(f"边界边缺少标记: {unmarked}")

    mesh = Mesh(vertices, elements, boundaries, max_regularity=max_regularity)

    for idx, raw in enumerate(data.get('curves') or []):
        if not isinstance(raw, (list, tuple)) or len(raw) < 3:
            raise MalformedMeshFile(f"曲边 {idx} 必须是 [顶点, 顶点, 角度]")
        key = edge_key(_as_int(raw[0], f"曲边 {idx}"), _as_int(raw[1], f"曲边 {idx}"))
        if key not in edge_count:
            raise MalformedMeshFile(f"曲边 {idx} {key} 不是网格的边")
        mesh.curves[key] = float(raw[2])
    if mesh.curves:
        logger.warning("网格包含 %d 条曲边，几何按直边处理", len(mesh.curves))

    return mesh


def _signed_area(coords):
    x, y = coords[:, 0], coords[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))
