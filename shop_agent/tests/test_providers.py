import pytest

from shop_agent.config.settings import Settings
from shop_agent.providers import create_provider
from shop_agent.providers.claude_client import ClaudeClient
from shop_agent.providers.registry import get_model_config, get_provider_config


def test_create_provider_default():
    provider = create_provider()
    assert isinstance(provider, ClaudeClient)
    assert provider.name == "claude"


def test_create_provider_unknown():
    with pytest.raises(KeyError):
        create_provider("kimi")


def test_registry_maps_logical_model():
    assert get_provider_config("CLAUDE").name == "claude"
    cfg = get_model_config("claude", "shop-chat")
    assert cfg.provider_model.startswith("claude-")
    assert cfg.max_tokens == 2000
    with pytest.raises(KeyError):
        get_model_config("claude", "ide-chat")


def test_settings_validators():
    s = Settings(anthropic_base_url="https://example.test/v1/", auth_callback_url="http://localhost:3000/cb/")
    assert s.anthropic_base_url == "https://example.test/v1"
    assert s.auth_callback_url == "http://localhost:3000/cb"
    with pytest.raises(ValueError):
        Settings(anthropic_api_key="short")
    with pytest.raises(ValueError):
        Settings(anthropic_base_url="ftp://example.test")


def test_settings_defaults():
    s = Settings()
    assert s.max_products_to_display == 3
    assert s.default_prompt_type == "standardAssistant"
    assert s.rules_file.endswith("vadf_rules.yaml")
