"""Provider 抽象接口。

编排器不直接依赖具体的 HTTP 实现，而是依赖这里的协议：

- ProviderClient: 面向 chat/completions 的底层客户端（ChatRequest -> ChatResult / 流式增量）。
- CompletionClient: 编排器使用的流式补全接口，逐块回调并最终返回完整文本。
- TitleGenerator: 根据首轮对话生成会话标题，尽力而为。
"""

from typing import AsyncIterator, Callable, List, Mapping, Optional, Protocol, Sequence

from chat_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk, Message


ChunkCallback = Callable[[str], None]


class ProviderClient(Protocol):
    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步产出增量。"""

        ...


class CompletionClient(Protocol):
    async def send(
        self,
        history: Sequence[Message],
        model_id: str,
        on_chunk: ChunkCallback,
        conversation_id: Optional[str] = None,
    ) -> str:
        ...


class TitleGenerator(Protocol):
    async def generate_title(self, exchange: List[Mapping[str, str]]) -> str:
        ...
