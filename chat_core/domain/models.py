"""统一的对话与结果数据模型。

本模块定义两组数据结构：

- Message / Conversation: 编排器、缓存与存储之间共享的会话模型。
  Message 是不可变对象，流式过程中通过 dataclasses.replace 生成新对象，
  消息列表本身也只做整体替换。
- ChatMessage / ChatRequest / ChatResult / ChatStreamChunk: 发给底层 Provider
  的请求与解析后的响应，Provider 适配器只依赖这些模型。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4


# 会话消息角色
MessageRole = Literal["user", "assistant"]

# LLM 消息角色类型（与 OpenAI / DeepSeek 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """会话中的一条消息。

    - conversation_id: 持久化之前（或会话创建失败的降级模式下）为 None。
    - model_id: 仅 assistant 消息携带。
    - error: 当本条 assistant 消息是失败提示时，记录 ErrorKind 的值，
      这类消息不会再作为上下文发给 Provider。
    """

    id: str
    role: MessageRole
    content: str
    created_at: datetime
    conversation_id: Optional[str] = None
    model_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def create(
        cls,
        role: MessageRole,
        content: str,
        conversation_id: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> "Message":
        return cls(
            id=new_message_id(),
            role=role,
            content=content,
            created_at=utcnow(),
            conversation_id=conversation_id,
            model_id=model_id,
        )


@dataclass
class Conversation:
    id: str
    title: str
    model_id: str
    owner_id: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass
class ChatMessage:
    """发给 Provider 的一条消息。"""

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    model 为逻辑模型 ID（如 "DeepSeek-V3"），由 registry 映射为真实模型名。
    """

    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    top_p: float = 0.95
    max_tokens: Optional[int] = None
    conversation_id: Optional[str] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。"""

    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果，choice.delta 代表本次增量内容。"""

    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""
