"""补全服务集成层。

- base: Provider / CompletionClient / TitleGenerator 协议。
- registry: 逻辑模型 ID 到厂商模型名的映射。
- http_client: OpenAI 兼容的 chat/completions 客户端（httpx）。
- completion: 编排器使用的流式补全适配器。
- title_client: 基于补全服务的标题生成器。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import CompletionClient, ProviderClient, TitleGenerator
from chat_core.providers.completion import StreamingCompletionClient
from chat_core.providers.http_client import ChatCompletionsClient
from chat_core.providers.title_client import LlmTitleGenerator


def create_provider(cfg=None) -> ProviderClient:
    """根据配置创建 Provider 实例。"""

    return ChatCompletionsClient(cfg or settings)


def create_completion_client(provider: Optional[ProviderClient] = None) -> CompletionClient:
    return StreamingCompletionClient(provider or create_provider())


def create_title_generator(provider: Optional[ProviderClient] = None) -> TitleGenerator:
    return LlmTitleGenerator(provider or create_provider(), model_id=settings.title_model)


__all__ = [
    "ChatCompletionsClient",
    "CompletionClient",
    "LlmTitleGenerator",
    "ProviderClient",
    "StreamingCompletionClient",
    "TitleGenerator",
    "create_completion_client",
    "create_provider",
    "create_title_generator",
]
