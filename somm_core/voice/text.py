"""朗读前的文本处理。

strip_emphasis 只删除标记字符本身，其余字符逐字保留，
因为播放位置（字符偏移）是相对于处理后的文本计算的。
"""

import re

_FENCE = re.compile(r"```(?:[\w+-]*\n)?([\s\S]*?)```")
_BOLD_STAR = re.compile(r"\*\*(.*?)\*\*", re.S)
_BOLD_UNDERSCORE = re.compile(r"__(.*?)__", re.S)
_EM_STAR = re.compile(r"(?<![\w*])\*(?!\s)([^*\n]+?)(?<!\s)\*(?![\w*])")
_EM_UNDERSCORE = re.compile(r"(?<![\w_])_(?!\s)([^_\n]+?)(?<!\s)_(?![\w_])")
_STRIKE = re.compile(r"~~(.*?)~~", re.S)
_INLINE_CODE = re.compile(r"`([^`\n]*)`")

_EMOJI_WORDS = {
    "🍷": " wine ",
    "🍇": " grapes ",
    "🥂": " cheers ",
    "✨": " sparkle ",
    "🍽️": " food ",
    "🌍": " region ",
}

_WHITESPACE = re.compile(r"\s+")


def strip_emphasis(text: str) -> str:
    """去掉 **粗体**、*斜体*、__粗体__、_斜体_、~~删除线~~、`代码` 与代码块标记。"""

    if not text:
        return ""
    out = _FENCE.sub(r"\1", text)
    out = _BOLD_STAR.sub(r"\1", out)
    out = _BOLD_UNDERSCORE.sub(r"\1", out)
    out = _STRIKE.sub(r"\1", out)
    out = _EM_STAR.sub(r"\1", out)
    out = _EM_UNDERSCORE.sub(r"\1", out)
    out = _INLINE_CODE.sub(r"\1", out)
    return out


def speakable_text(content: str) -> str:
    """把一条 assistant 回复整理成适合朗读的文本：表情转单词、去标记、压缩空白。"""

    if not content:
        return ""
    out = content
    for emoji, word in _EMOJI_WORDS.items():
        out = out.replace(emoji, word)
    out = strip_emphasis(out)
    return _WHITESPACE.sub(" ", out).strip()
