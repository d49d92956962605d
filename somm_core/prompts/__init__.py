"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 sommelier 的 system prompt，
并可选地附加当前酒款的资料（产品层扩展，核心契约仍是扁平消息列表）。
"""

from pathlib import Path
from typing import Any, Mapping, Optional


PROMPTS_DIR = Path(__file__).resolve().parent

# 酒款资料中会写进提示词的字段及其标签
WINE_PROFILE_FIELDS = (
    ("name", "Wine"),
    ("vintage", "Vintage"),
    ("region", "Region"),
    ("grape", "Grape"),
    ("abv", "ABV"),
    ("tasting_notes", "Tasting notes"),
    ("food_pairing", "Food pairing"),
)


def load_system_prompt(locale: str = "en") -> str:
    """根据语言加载 sommelier 系统提示词文本。"""

    fname = PROMPTS_DIR / locale / "sommelier_system.md"
    return fname.read_text(encoding="utf-8").strip()


def build_system_prompt(wine: Optional[Mapping[str, Any]] = None, locale: str = "en") -> str:
    """系统提示词 + 酒款资料。wine 为空或字段全空时只返回基础提示词。"""

    base = load_system_prompt(locale)
    if not wine:
        return base
    lines = []
    for key, label in WINE_PROFILE_FIELDS:
        value = wine.get(key)
        if value in (None, "", [], ()):
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        lines.append(f"- {label}: {value}")
    if not lines:
        return base
    return base + "\n\nThe guest is looking at this wine:\n" + "\n".join(lines)
