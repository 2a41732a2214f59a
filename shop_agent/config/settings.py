"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级：
初始化参数 > 环境变量 > .env > config.yaml > secrets。
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
    explicit = os.getenv("SHOP_AGENT_CONFIG_FILE")
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


_DEFAULT_RULES_FILE = Path(__file__).resolve().parents[1] / "intents" / "rules" / "vadf_rules.yaml"


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 模型相关配置 ----
    anthropic_api_key: Optional[str] = Field(default=None, description="Claude API 密钥")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Claude Messages API 基础URL",
    )
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    default_model: str = Field(
        default="shop-chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )
    max_tokens: int = Field(default=2000, ge=1, description="单次模型调用的最大输出 token")
    default_prompt_type: str = Field(
        default="standardAssistant",
        description="请求未指定 prompt_type 时使用的提示词类型",
    )

    # ---- 网络 ----
    http_timeout: float = Field(default=60.0, ge=1.0, description="模型 HTTP 超时时间（秒）")
    mcp_timeout: float = Field(default=15.0, ge=1.0, description="工具服务器 HTTP 超时时间（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 对话循环 ----
    max_products_to_display: int = Field(default=3, ge=1, le=20, description="单轮最多展示的商品数")
    max_model_calls: int = Field(
        default=10,
        ge=1,
        le=50,
        description="单轮对话内模型调用的最大次数",
    )
    product_search_tool: str = Field(default="search_shop_catalog", description="商品搜索工具名")
    product_details_tool: str = Field(default="get_product_details", description="商品详情工具名")

    # ---- 客户账户 OAuth ----
    customer_api_client_id: Optional[str] = Field(default=None, description="Customer Account API client id")
    auth_callback_url: str = Field(
        default="http://localhost:3000/auth/callback",
        description="OAuth 回调地址",
    )
    customer_api_scopes: str = Field(default="openid email profile phone", description="请求的授权范围")
    customer_api_client_secret: Optional[str] = Field(default=None, description="Customer Account API client secret（公开客户端留空）")

    # ---- 规则引擎 ----
    rules_file: str = Field(default=str(_DEFAULT_RULES_FILE), description="意图规则 YAML 路径")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("anthropic_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("anthropic_base_url", "auth_callback_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Not an http(s) URL: {v!r}")
        return v.rstrip("/")

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
