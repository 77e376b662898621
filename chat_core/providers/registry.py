"""模型配置。

本模块将“逻辑模型 ID”与“厂商模型名”解耦：

- 逻辑 ID：UI 与编排器使用的名称，例如 "DeepSeek-V3"。
- provider_model：补全服务实际接受的模型名，例如 "deepseek-chat"。

上层只关心逻辑 ID，具体映射在这里集中配置。
"""

from dataclasses import dataclass
from typing import Mapping

from chat_core.domain.exceptions import ValidationError


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    model_id: str
    provider_model: str
    max_tokens: int
    default_temperature: float


MODEL_REGISTRY: Mapping[str, ModelConfig] = {
    "DeepSeek-V3": ModelConfig(
        model_id="DeepSeek-V3",
        provider_model="deepseek-chat",
        max_tokens=8192,
        default_temperature=0.7,
    ),
    "DeepSeek-R1": ModelConfig(
        model_id="DeepSeek-R1",
        provider_model="deepseek-reasoner",
        max_tokens=8192,
        default_temperature=0.6,
    ),
}


def get_model_config(model_id: str) -> ModelConfig:
    """根据逻辑 ID 获取 ModelConfig，不区分大小写。

    未登记的 ID 原样透传给补全服务，便于接入新模型。
    """

    key = (model_id or "").lower()
    for k, cfg in MODEL_REGISTRY.items():
        if k.lower() == key:
            return cfg
    if not model_id:
        raise ValidationError(code="UNKNOWN_MODEL", message="model id is empty")
    return ModelConfig(model_id=model_id, provider_model=model_id, max_tokens=4096, default_temperature=0.7)
