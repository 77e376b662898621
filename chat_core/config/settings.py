"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    completion_api_key: Optional[str] = Field(default=None, description="补全服务 API 密钥")
    completion_base_url: str = Field(
        default="https://api.deepseek.com/v1",
        description="OpenAI 兼容的 chat/completions 基础 URL",
    )
    default_model: str = Field(default="DeepSeek-V3", description="默认逻辑模型 ID")
    title_model: str = Field(default="DeepSeek-V3", description="生成会话标题使用的逻辑模型 ID")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 编排器 ----
    request_timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        description="单次提交从开始到流式结束的墙钟超时（秒）",
    )
    max_context_messages: int = Field(default=20, ge=1, le=100, description="最大上下文消息数")
    cache_max_entries: int = Field(default=32, ge=0, description="会话缓存上限，0 表示不限")
    title_max_length: int = Field(default=40, ge=8, description="生成标题的最大长度")
    provisional_title_length: int = Field(default=50, ge=8, description="临时标题截取长度")

    # ---- 匿名配额 ----
    anonymous_daily_limit: int = Field(default=10, ge=0, description="匿名用户每日消息上限")
    anonymous_reset_hour: int = Field(default=2, ge=0, le=23, description="每日重置的整点（本地时间）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("completion_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
