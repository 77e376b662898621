"""对外 API 服务模块。

提供简化的异步函数接口供上层应用调用，按用户维护编排器单例。
"""

from typing import Any, Dict, Optional

from chat_core.chat.cache import ConversationCache
from chat_core.chat.orchestrator import MessageOrchestrator
from chat_core.chat.quota import UsageQuotaTracker
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.infrastructure.storage.quota_store import JsonQuotaStorage
from chat_core.providers import create_completion_client, create_provider, create_title_generator


_store: Optional[ConversationStore] = None
_quota: Optional[UsageQuotaTracker] = None
_orchestrators: Dict[Optional[str], MessageOrchestrator] = {}


def get_store() -> ConversationStore:
    global _store
    if _store is None:
        _store = JsonConversationStore(root=settings.storage_root)
    return _store


def get_quota_tracker() -> UsageQuotaTracker:
    """匿名配额计数器（单例，持久化到 storage_root 下的 JSON 文件）。"""
    global _quota
    if _quota is None:
        _quota = UsageQuotaTracker(storage=JsonQuotaStorage())
    return _quota


def build_orchestrator(owner_id: Optional[str] = None) -> MessageOrchestrator:
    """按配置组装一个新的编排器。"""

    provider = create_provider()
    return MessageOrchestrator(
        store=get_store(),
        completion_client=create_completion_client(provider),
        title_generator=create_title_generator(provider),
        quota=get_quota_tracker(),
        cache=ConversationCache(settings.cache_max_entries),
        owner_id=owner_id,
    )


def get_orchestrator(owner_id: Optional[str] = None) -> MessageOrchestrator:
    if owner_id not in _orchestrators:
        _orchestrators[owner_id] = build_orchestrator(owner_id)
    return _orchestrators[owner_id]


def _message_dict(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "role": m.role,
        "content": m.content,
        "conversation_id": m.conversation_id,
        "model_id": m.model_id,
        "error": m.error,
        "created_at": m.created_at.isoformat(),
    }


async def run_chat(
    user_input: str,
    model_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Dict[str, Any]:
    """发送一条消息并等待回答（含后台标题生成）。

    Args:
        user_input: 用户输入内容
        model_id: 逻辑模型 ID（可选，默认取配置）
        conversation_id: 会话 ID（可选，不提供则沿用当前会话或新建）
        owner_id: 已登录用户 ID（可选，None 表示匿名）

    Returns:
        包含会话 ID、本轮的用户/助手消息与错误类型的字典；
        流水线忙碌或输入为空时 ignored 为 True，不返回消息
    """
    orchestrator = get_orchestrator(owner_id)
    if orchestrator.is_generating:
        logger.info("Chat ignored, pipeline busy", extra={"extra": {"owner_id": owner_id}})
        return _ignored_result(orchestrator)
    try:
        if conversation_id and conversation_id != orchestrator.conversation_id:
            await orchestrator.load_conversation(conversation_id)
        before = len(orchestrator.messages)
        await orchestrator.submit(user_input, model_id)
        await orchestrator.wait_for_background()
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise

    messages = orchestrator.messages
    # 空输入或被并发请求抢占时 submit 不追加任何消息
    if len(messages) < before + 2:
        return _ignored_result(orchestrator)
    user, assistant = messages[before], messages[before + 1]
    return {
        "conversation_id": orchestrator.conversation_id,
        "ignored": False,
        "user_message": _message_dict(user),
        "assistant_message": _message_dict(assistant),
        "error": orchestrator.last_error,
    }


def _ignored_result(orchestrator: MessageOrchestrator) -> Dict[str, Any]:
    return {
        "conversation_id": orchestrator.conversation_id,
        "ignored": True,
        "user_message": None,
        "assistant_message": None,
        "error": None,
    }


async def list_conversations(owner_id: Optional[str] = None) -> list[Dict[str, Any]]:
    """列出用户的会话（按更新时间倒序）。"""

    convs = await get_orchestrator(owner_id).refresh_conversations()
    return [
        {
            "id": c.id,
            "title": c.title,
            "model_id": c.model_id,
            "created_at": c.created_at.isoformat(),
            "updated_at": c.updated_at.isoformat(),
        }
        for c in convs
    ]


async def get_conversation_messages(conversation_id: str, owner_id: Optional[str] = None) -> list[Dict[str, Any]]:
    """打开会话并返回其全部消息（经由缓存）。"""

    messages = await get_orchestrator(owner_id).load_conversation(conversation_id)
    return [_message_dict(m) for m in messages]


def quota_status() -> Dict[str, Any]:
    """匿名配额的展示数据：已用、上限、剩余与重置时间。"""

    tracker = get_quota_tracker()
    stats = tracker.stats()
    return {
        "count": stats.count,
        "limit": stats.limit,
        "remaining": tracker.remaining(),
        "reset_at": stats.reset_at.isoformat(),
        "reset_time": tracker.reset_time_label(),
    }
