"""配置类定义。"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from .exceptions import ChatConfigError

TRUTHY = ("true", "1", "yes", "on")


def _env(key: str) -> Optional[str]:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_float(key: str) -> Optional[float]:
    raw = _env(key)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ChatConfigError(f"环境变量 {key} 必须为数字: {raw}") from exc


@dataclass(frozen=True, slots=True)
class CredentialAvailability:
    """各上游提供商当前是否有可用密钥的快照，路由时只读。"""

    base_text: bool = True
    vision: bool = False
    multimodal: bool = False
    transcription: bool = False

    @classmethod
    def from_env(cls) -> "CredentialAvailability":
        return cls(
            base_text=_env("DEEPSEEK_API_KEY") is not None,
            vision=(_env("MOONSHOT_API_KEY") or _env("KIMI_API_KEY")) is not None,
            multimodal=_env("OPENAI_API_KEY") is not None,
            transcription=_env("VOLCENGINE_ACCESS_KEY_ID") is not None
            and _env("VOLCENGINE_SECRET_ACCESS_KEY") is not None,
        )

    def missing_keys(self) -> Tuple[str, ...]:
        missing: List[str] = []
        if not self.base_text:
            missing.append("DEEPSEEK_API_KEY (必需)")
        if not self.vision:
            missing.append("MOONSHOT_API_KEY 或 KIMI_API_KEY (图片理解)")
        if not self.multimodal:
            missing.append("OPENAI_API_KEY (图像生成、视频、语音)")
        if not self.transcription:
            missing.append("VOLCENGINE_ACCESS_KEY_ID + VOLCENGINE_SECRET_ACCESS_KEY (音频识别)")
        return tuple(missing)


@dataclass(slots=True)
class ProviderEndpoint:
    """单个上游的接入信息。"""

    api_key: Optional[str]
    base_url: str

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(slots=True)
class DispatchSettings:
    """生成参数。"""

    temperature: float = 0.7
    max_tokens: int = 4000
    strip_emoji: bool = False
    reasoner_model: str = "deepseek-reasoner"


@dataclass(slots=True)
class DispatchConfig:
    """运行配置。"""

    base_text: ProviderEndpoint
    vision: ProviderEndpoint
    multimodal: ProviderEndpoint
    transcription: ProviderEndpoint
    request_timeout: Optional[float] = None
    settings: DispatchSettings = field(default_factory=DispatchSettings)

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        settings = DispatchSettings()
        temperature = _env_float("SMART_CHAT_TEMPERATURE")
        if temperature is not None:
            settings.temperature = temperature
        max_tokens = _env_float("SMART_CHAT_MAX_TOKENS")
        if max_tokens is not None:
            settings.max_tokens = int(max_tokens)
        strip_raw = _env("SMART_CHAT_STRIP_EMOJI")
        if strip_raw is not None:
            settings.strip_emoji = strip_raw.lower() in TRUTHY

        # 豆包语音识别使用 access key 作为 Bearer 凭证
        return cls(
            base_text=ProviderEndpoint(
                _env("DEEPSEEK_API_KEY"), _env("DEEPSEEK_API_BASE") or "https://api.deepseek.com/v1"
            ),
            vision=ProviderEndpoint(
                _env("MOONSHOT_API_KEY") or _env("KIMI_API_KEY"),
                _env("MOONSHOT_API_BASE") or "https://api.moonshot.cn/v1",
            ),
            multimodal=ProviderEndpoint(
                _env("OPENAI_API_KEY"), _env("OPENAI_API_BASE") or "https://api.openai.com/v1"
            ),
            transcription=ProviderEndpoint(
                _env("VOLCENGINE_ACCESS_KEY_ID"),
                _env("VOLCENGINE_ASR_BASE") or "https://openspeech.bytedance.com/api/v1",
            ),
            request_timeout=_env_float("SMART_CHAT_TIMEOUT"),
            settings=settings,
        )

    def availability(self) -> CredentialAvailability:
        """根据已加载的端点推导密钥可用性。"""
        return CredentialAvailability(
            base_text=self.base_text.configured,
            vision=self.vision.configured,
            multimodal=self.multimodal.configured,
            transcription=self.transcription.configured,
        )


def load_env_file(path: str | os.PathLike[str] = ".env") -> None:
    """加载 .env 文件，不覆盖已有环境变量。"""
    env_path = Path(path)
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


__all__ = [
    "CredentialAvailability",
    "ProviderEndpoint",
    "DispatchSettings",
    "DispatchConfig",
    "load_env_file",
]
