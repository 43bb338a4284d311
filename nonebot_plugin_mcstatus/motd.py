import re
from typing import Any

COLOR_CODES = {
    "black": "0",
    "dark_blue": "1",
    "dark_green": "2",
    "dark_aqua": "3",
    "dark_red": "4",
    "dark_purple": "5",
    "gold": "6",
    "gray": "7",
    "dark_gray": "8",
    "blue": "9",
    "green": "a",
    "aqua": "b",
    "red": "c",
    "light_purple": "d",
    "yellow": "e",
    "white": "f",
    "reset": "r",
}
"""命名颜色到 § 颜色代码的映射，未知颜色（包括 #RRGGBB）按白色处理"""

FORMAT_CODES = (
    ("bold", "l"),
    ("italic", "o"),
    ("underlined", "n"),
    ("strikethrough", "m"),
    ("obfuscated", "k"),
)

RESET = "§r"


def has_formatting(node: Any) -> bool:
    """判断文本组件自身是否带有颜色或样式属性"""
    if not isinstance(node, dict):
        return False
    return bool(node.get("color")) or any(node.get(key) for key, _ in FORMAT_CODES)


def flatten_motd(node: Any) -> str:
    """
    将 JSON 文本组件展开为带 § 格式代码的字符串。

    - 纯字符串原样返回
    - 组件自身的颜色与样式代码写在其文本之前
    - `extra` 中的子组件按顺序展开；若前一个兄弟组件带有格式，
      则在当前组件前插入 `§r`，避免格式串到后面的组件

    :params node: 字符串、组件列表或组件字典。

    :returns: 带有 § 格式代码的字符串。
    """
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return _flatten_siblings(node)
    if not isinstance(node, dict):
        return "" if node is None else str(node)

    result = ""
    if color := node.get("color"):
        result += f"§{COLOR_CODES.get(color, 'f')}"
    for key, code in FORMAT_CODES:
        if node.get(key):
            result += f"§{code}"

    if (text := node.get("text")) is not None:
        result += str(text)

    extra = node.get("extra")
    if isinstance(extra, list):
        result += _flatten_siblings(extra)
    elif isinstance(extra, dict):
        result += flatten_motd(extra)

    return result


def _flatten_siblings(nodes: list) -> str:
    result = ""
    previous = None
    for node in nodes:
        if has_formatting(previous):
            result += RESET
        result += flatten_motd(node)
        previous = node
    return result


def strip_motd(text: str | None) -> str:
    """去除字符串中所有的 § 格式代码"""
    if not text:
        return ""
    return re.sub(r"§.", "", text, flags=re.DOTALL)
