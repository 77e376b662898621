"""编排器使用的流式补全适配器。

把 ProviderClient.chat_stream 的增量逐块交给 on_chunk 回调（不做缓冲），
流结束后返回拼接好的完整文本。空文本的判定交给调用方。
"""

from typing import List, Optional, Sequence

from chat_core.domain.models import ChatMessage, ChatRequest, Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ChunkCallback, ProviderClient


class StreamingCompletionClient:
    def __init__(self, provider: ProviderClient, system_prompt: Optional[str] = None):
        self._provider = provider
        self._system_prompt = system_prompt

    async def send(
        self,
        history: Sequence[Message],
        model_id: str,
        on_chunk: ChunkCallback,
        conversation_id: Optional[str] = None,
    ) -> str:
        messages: List[ChatMessage] = []
        if self._system_prompt:
            messages.append(ChatMessage(role="system", content=self._system_prompt))
        messages.extend(ChatMessage(role=m.role, content=m.content) for m in history)
        req = ChatRequest(model=model_id, messages=messages, conversation_id=conversation_id)

        pieces: List[str] = []
        usage = None
        async for chunk in self._provider.chat_stream(req):
            delta_text = chunk.text
            if chunk.usage:
                usage = chunk.usage
            if not delta_text:
                continue
            pieces.append(delta_text)
            on_chunk(delta_text)

        if usage:
            logger.info(
                "Token usage",
                extra={"extra": {
                    "conversation_id": conversation_id,
                    "model": model_id,
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "total_tokens": usage.total_tokens,
                }},
            )
        return "".join(pieces)
