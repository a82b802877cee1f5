"""Pytest configuration for tests.

Sets up Python path and shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add project root to Python path so imports work correctly
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from smart_chat.config import CredentialAvailability, DispatchConfig, DispatchSettings, ProviderEndpoint  # noqa: E402

ENV_KEYS = (
    "DEEPSEEK_API_KEY",
    "DEEPSEEK_API_BASE",
    "MOONSHOT_API_KEY",
    "KIMI_API_KEY",
    "MOONSHOT_API_BASE",
    "OPENAI_API_KEY",
    "OPENAI_API_BASE",
    "VOLCENGINE_ACCESS_KEY_ID",
    "VOLCENGINE_SECRET_ACCESS_KEY",
    "VOLCENGINE_ASR_BASE",
    "SMART_CHAT_TIMEOUT",
    "SMART_CHAT_TEMPERATURE",
    "SMART_CHAT_MAX_TOKENS",
    "SMART_CHAT_STRIP_EMOJI",
    "LLM_PROVIDER",
    "LLM_API_KEY",
    "LLM_API_BASE",
    "LLM_MODEL",
    "LLM_TIMEOUT",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the package reads."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def all_credentials():
    return CredentialAvailability(base_text=True, vision=True, multimodal=True, transcription=True)


@pytest.fixture
def base_only():
    return CredentialAvailability(base_text=True)


@pytest.fixture
def dispatch_config():
    return DispatchConfig(
        base_text=ProviderEndpoint("sk-deepseek", "https://deepseek.test/v1/"),
        vision=ProviderEndpoint("sk-moonshot", "https://moonshot.test/v1"),
        multimodal=ProviderEndpoint("sk-openai", "https://openai.test/v1"),
        transcription=ProviderEndpoint("ak-volc", "https://asr.test/api/v1"),
        request_timeout=5.0,
        settings=DispatchSettings(),
    )
