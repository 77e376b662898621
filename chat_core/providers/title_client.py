"""基于补全服务的会话标题生成器。

只取前 4 条消息、最多 500 个字符作为上下文；模型返回空内容时
退回到首条消息截断的标题。网络/服务端异常直接抛出，由编排器静默处理。
"""

from typing import List, Mapping

from chat_core.chat.text import DEFAULT_TITLE, clean_generated_title, fallback_title, format_exchange
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.prompts import load_system_prompt
from chat_core.providers.base import ProviderClient


class LlmTitleGenerator:
    def __init__(self, provider: ProviderClient, model_id: str, max_length: int = 40):
        self._provider = provider
        self._model_id = model_id
        self._max_length = max_length

    async def generate_title(self, exchange: List[Mapping[str, str]]) -> str:
        if not exchange:
            return DEFAULT_TITLE
        context = format_exchange(exchange[:4])
        req = ChatRequest(
            model=self._model_id,
            messages=[
                ChatMessage(role="system", content=load_system_prompt("title").format(max_length=self._max_length)),
                ChatMessage(
                    role="user",
                    content=f"Create a short, informative title for this conversation:\n\n{context}",
                ),
            ],
            temperature=0.3,
            max_tokens=32,
        )
        result = await self._provider.chat(req)
        title = clean_generated_title(result.text, self._max_length)
        return title or fallback_title(exchange[0]["content"], self._max_length)
