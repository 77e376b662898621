"""Chat Core 顶层包。

该包提供聊天前端背后的消息生命周期编排：
配置加载、领域模型、补全服务适配、会话缓存、匿名配额、
流式编排器与本地持久化存储。
"""

from chat_core.chat.cache import ConversationCache
from chat_core.chat.orchestrator import MessageOrchestrator
from chat_core.chat.quota import UsageQuotaTracker

__all__ = ["ConversationCache", "MessageOrchestrator", "UsageQuotaTracker"]
