from typing import List, Optional, Protocol

from .models import Conversation, Message, MessageRole


class ConversationStore(Protocol):
    """会话与消息的持久化存储（异步）。

    编排器只通过这些方法访问存储；所有失败都以 BusinessError 抛出，
    由调用方决定是记录日志后降级还是继续向上抛。
    """

    async def create_conversation(
        self, owner_id: Optional[str], initial_title: str, model_id: str
    ) -> Conversation:
        ...

    async def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    async def list_conversations(self, owner_id: Optional[str] = None) -> List[Conversation]:
        ...

    async def save_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        model_id: Optional[str] = None,
    ) -> Message:
        ...

    async def get_conversation_messages(self, conversation_id: str) -> List[Message]:
        ...

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def remove_duplicate_messages(self, conversation_id: Optional[str] = None) -> int:
        ...
