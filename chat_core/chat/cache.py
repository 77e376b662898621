"""会话消息缓存。

conversation_id -> 有序消息列表。打开会话时填充（read-through），
开始新会话时整体清空；只有当前打开的会话会增量 append。
"""

from collections import OrderedDict
from typing import List, Optional, Sequence

from chat_core.config.settings import settings
from chat_core.domain.models import Message


class ConversationCache:
    """简单的 LRU 缓存，max_entries 为 0 时不限制条目数。"""

    def __init__(self, max_entries: Optional[int] = None):
        self._max_entries = settings.cache_max_entries if max_entries is None else max_entries
        self._entries: "OrderedDict[str, List[Message]]" = OrderedDict()

    def get(self, conversation_id: str) -> Optional[List[Message]]:
        """命中时返回消息列表的副本，未命中返回 None（调用方应回源后 put）。"""

        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        self._entries.move_to_end(conversation_id)
        return list(entry)

    def put(self, conversation_id: str, messages: Sequence[Message]) -> None:
        self._entries[conversation_id] = list(messages)
        self._entries.move_to_end(conversation_id)
        if self._max_entries:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def append(self, conversation_id: str, message: Message) -> bool:
        """追加到已缓存的会话末尾；会话不在缓存中时忽略并返回 False。"""

        entry = self._entries.get(conversation_id)
        if entry is None:
            return False
        entry.append(message)
        self._entries.move_to_end(conversation_id)
        return True

    def evict(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
