# backend/core/list_nesting.py
# 功能: 两层列表的缩进 / 反缩进 / 增删，以及编号标记生成
# 主要函数:
#   - indent(), outdent(): 层级调整
#   - add_item(), add_child(), remove_item(), remove_child(): 增删
#   - update_item_body(), update_child_body(): 修改文本
#   - get_list_marker(), to_roman(), get_style_label(), render_markers(), get_bullet_marker()
# 数据结构: List[ListItem]，所有函数都返回新列表，不修改入参

"""
列表嵌套引擎

一个列表块的条目是两层树：顶层条目可以带 children，children 中的条目不能再嵌套。
- 缩进时条目自身的 children 会被丢弃（保证深度 ≤ 2）
- children 变空时归一为 None
- 越界或不允许的操作一律原样返回（no-op），不抛异常
"""

from typing import List, Optional, Tuple

from core.block_schema import ListItem


# ============== 层级调整 ==============

def indent(items: List[ListItem], index: int) -> List[ListItem]:
    """
    把 items[index] 变成上一个条目的最后一个子项。

    第一个条目没有上一个兄弟，index == 0 时不做任何事。
    被缩进条目自己的 children 会被丢弃。
    """
    if index <= 0 or index >= len(items):
        return list(items)

    previous = items[index - 1]
    moved = ListItem(body=items[index].body)
    new_previous = ListItem(
        body=previous.body,
        children=list(previous.children or []) + [moved],
    )
    return list(items[:index - 1]) + [new_previous] + list(items[index + 1:])


def outdent(items: List[ListItem], parent_index: int, child_index: int) -> List[ListItem]:
    """把 items[parent_index].children[child_index] 提升为紧跟在父条目之后的顶层条目"""
    if parent_index < 0 or parent_index >= len(items):
        return list(items)
    parent = items[parent_index]
    children = list(parent.children or [])
    if child_index < 0 or child_index >= len(children):
        return list(items)

    child = children.pop(child_index)
    new_parent = ListItem(body=parent.body, children=children or None)
    promoted = ListItem(body=child.body)
    return (
        list(items[:parent_index])
        + [new_parent, promoted]
        + list(items[parent_index + 1:])
    )


# ============== 增删 ==============

def add_item(items: List[ListItem], new_item: Optional[ListItem] = None) -> List[ListItem]:
    """在末尾追加一个顶层条目"""
    return list(items) + [new_item or ListItem(body="")]


def add_child(
    items: List[ListItem],
    parent_index: int,
    new_item: Optional[ListItem] = None,
) -> List[ListItem]:
    """
    给 items[parent_index] 追加一个子项（children 不存在时创建）。

    子项本身带 children 时构造会失败（pydantic ValidationError）。
    """
    if parent_index < 0 or parent_index >= len(items):
        return list(items)
    parent = items[parent_index]
    child = new_item or ListItem(body="")
    new_parent = ListItem(
        body=parent.body,
        children=list(parent.children or []) + [child],
    )
    result = list(items)
    result[parent_index] = new_parent
    return result


def remove_item(items: List[ListItem], index: int) -> List[ListItem]:
    """删除顶层条目；列表至少保留一个顶层条目"""
    if len(items) <= 1 or index < 0 or index >= len(items):
        return list(items)
    return list(items[:index]) + list(items[index + 1:])


def remove_child(items: List[ListItem], parent_index: int, child_index: int) -> List[ListItem]:
    """删除子项；最后一个子项删除后 children 归一为 None"""
    if parent_index < 0 or parent_index >= len(items):
        return list(items)
    parent = items[parent_index]
    children = list(parent.children or [])
    if child_index < 0 or child_index >= len(children):
        return list(items)
    children.pop(child_index)
    result = list(items)
    result[parent_index] = ListItem(body=parent.body, children=children or None)
    return result


def update_item_body(items: List[ListItem], index: int, body: str) -> List[ListItem]:
    if index < 0 or index >= len(items):
        return list(items)
    result = list(items)
    result[index] = items[index].model_copy(update={"body": body})
    return result


def update_child_body(
    items: List[ListItem],
    parent_index: int,
    child_index: int,
    body: str,
) -> List[ListItem]:
    if parent_index < 0 or parent_index >= len(items):
        return list(items)
    parent = items[parent_index]
    children = list(parent.children or [])
    if child_index < 0 or child_index >= len(children):
        return list(items)
    children[child_index] = children[child_index].model_copy(update={"body": body})
    result = list(items)
    result[parent_index] = ListItem(body=parent.body, children=children)
    return result


# ============== 编号标记 ==============

ROMAN_NUMERALS = (
    (1000, "M"),
    (900, "CM"),
    (500, "D"),
    (400, "CD"),
    (100, "C"),
    (90, "XC"),
    (50, "L"),
    (40, "XL"),
    (10, "X"),
    (9, "IX"),
    (5, "V"),
    (4, "IV"),
    (1, "I"),
)

LIST_STYLE_LABELS = {
    "decimal": "1, 2, 3",
    "lower-alpha": "a, b, c",
    "upper-alpha": "A, B, C",
    "lower-roman": "i, ii, iii",
    "upper-roman": "I, II, III",
}

BULLET_MARKERS = {
    "disc": "●",
    "circle": "○",
    "square": "■",
    "dash": "-",
    "check": "✓",
}


def to_roman(num: int) -> str:
    """标准减法罗马数字，仅支持 1..3999；超出范围返回十进制字符串"""
    if num < 1 or num > 3999:
        return str(num)
    result = []
    for value, symbol in ROMAN_NUMERALS:
        while num >= value:
            result.append(symbol)
            num -= value
    return "".join(result)


def get_list_marker(num: int, style: Optional[str]) -> str:
    """
    第 num 个条目（从 1 开始）的编号标记。

    字母样式在 z / Z 之后按 26 取模回绕；未知样式按 decimal 处理。
    """
    if style == "lower-alpha":
        return chr(97 + (num - 1) % 26)
    if style == "upper-alpha":
        return chr(65 + (num - 1) % 26)
    if style == "lower-roman":
        return to_roman(num).lower()
    if style == "upper-roman":
        return to_roman(num)
    return str(num)


def get_style_label(style: Optional[str]) -> str:
    return LIST_STYLE_LABELS.get(style, "1, 2, 3")


def get_bullet_marker(style: Optional[str]) -> str:
    return BULLET_MARKERS.get(style, BULLET_MARKERS["disc"])


def render_markers(
    items: List[ListItem],
    start: int = 1,
    style: Optional[str] = "decimal",
    sub_style: Optional[str] = "lower-alpha",
) -> List[Tuple[str, List[str]]]:
    """
    计算整个编号列表的标记布局。

    顶层从 start 开始编号；每个子列表都从 1 重新编号。

    Returns:
        [(顶层标记, [子项标记, ...]), ...]
    """
    layout = []
    for offset, item in enumerate(items):
        marker = get_list_marker(start + offset, style)
        child_markers = [
            get_list_marker(position, sub_style)
            for position in range(1, len(item.children or []) + 1)
        ]
        layout.append((marker, child_markers))
    return layout
