"""文本清洗与标题工具函数。"""

import re
from typing import Iterable, Mapping

DEFAULT_TITLE = "New Conversation"

# 保留 \t \n，去掉其余控制字符、BOM 与 NUL
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f\ufeff]")
_WHITESPACE = re.compile(r"\s+")
_QUOTES = re.compile(r"^[\"'“”‘’]+|[\"'“”‘’]+$")


def sanitize_content(content: str) -> str:
    """去掉会破坏存储/JSON 的控制字符并 trim。"""

    if not content or not isinstance(content, str):
        return ""
    return _CONTROL_CHARS.sub("", content).strip()


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def provisional_title(first_message: str, max_length: int = 50) -> str:
    """新会话的临时标题：首条消息前 max_length 个字符，空白折叠为单个空格。"""

    title = collapse_whitespace((first_message or "").strip()[:max_length])
    return title or DEFAULT_TITLE


def fallback_title(first_message: str, max_length: int = 40) -> str:
    """标题生成失败时的兜底：截取首条消息，被截断时补 "..."。"""

    text = (first_message or "").strip()
    if not text:
        return DEFAULT_TITLE
    title = text[:max_length]
    return title + "..." if len(title) < len(text) else title


def clean_generated_title(raw: str, max_length: int = 40) -> str:
    """清理模型返回的标题：去引号、去换行、超长截断。"""

    title = _QUOTES.sub("", (raw or "").strip())
    title = collapse_whitespace(title.replace("\n", " "))
    if len(title) > max_length:
        title = title[: max_length - 3] + "..."
    return title


def format_exchange(exchange: Iterable[Mapping[str, str]], limit: int = 500) -> str:
    """把若干条 {role, content} 拼成标题生成用的上下文文本。"""

    context = "\n".join(f"{item['role']}: {item['content']}" for item in exchange)
    if len(context) > limit:
        context = context[:limit] + "..."
    return context
