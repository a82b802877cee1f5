"""能力路由器：根据消息内容、附件类型和密钥可用性选择上游模型。

路由为纯函数，不做任何 I/O。优先级固定（先命中者生效）：

1. 音频附件 → 语音识别（缺少密钥时降级为文本）
2. 图像生成关键词 → 图像生成（降级为文本）
3. 图片附件 → 视觉理解（不降级：改用基础模型并要求其明确提示配置失败）
4. 视频关键词 → 视频（降级为文本）
5. 语音关键词 → 语音合成（降级为文本）
6. 默认 → 文本对话
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from .attachments import AUDIO, IMAGE, has_category
from .config import CredentialAvailability
from .exceptions import ChatConfigError
from .lexicons import Lexicons, default_lexicons
from .models import Capability, Message, Provider, Role, RouteDecision, as_messages
from .prompts import compose_system_prompt, degradation_notice, failure_notice, missing_keys_notice

logger = logging.getLogger(__name__)

# 每个提供商对应的密钥可用性字段
PROVIDER_CREDENTIALS: Dict[Provider, str] = {
    Provider.BASE_TEXT: "base_text",
    Provider.VISION: "vision",
    Provider.MULTIMODAL: "multimodal",
    Provider.TRANSCRIPTION: "transcription",
}

CAPABILITY_PROVIDERS: Dict[Capability, Provider] = {
    Capability.TEXT: Provider.BASE_TEXT,
    Capability.VISION: Provider.VISION,
    Capability.VIDEO: Provider.MULTIMODAL,
    Capability.AUDIO: Provider.MULTIMODAL,
    Capability.AUDIO_TRANSCRIPTION: Provider.TRANSCRIPTION,
    Capability.IMAGE_GENERATION: Provider.MULTIMODAL,
}

FALLBACK_REASONS: Dict[Capability, str] = {
    Capability.AUDIO_TRANSCRIPTION: "音频识别功能需要配置 VOLCENGINE_ACCESS_KEY_ID 和 VOLCENGINE_SECRET_ACCESS_KEY，当前将使用文本模式处理您的请求。",
    Capability.IMAGE_GENERATION: "图像生成功能需要配置 OPENAI_API_KEY，当前将为您提供图像创作的文字描述和建议。",
    Capability.VISION: "图片理解功能需要配置 MOONSHOT_API_KEY 或 KIMI_API_KEY，请配置后重试。",
    Capability.VIDEO: "视频处理功能需要配置 OPENAI_API_KEY，当前将为您提供视频相关的文字建议和指导。",
    Capability.AUDIO: "语音合成功能需要配置 OPENAI_API_KEY，当前将为您提供语音合成的文字指导和建议。",
}

BASELINE_MISSING = "基础文本对话需要配置 DEEPSEEK_API_KEY，当前无法处理您的请求。请在环境变量或密钥存储中配置后重试。"


@dataclass(frozen=True, slots=True)
class RouteModels:
    """各能力使用的模型标识。"""

    text: str = "deepseek-chat"
    vision: str = "moonshot-v1-8k-vision"
    video: str = "gpt-4o"
    audio: str = "gpt-4o-audio-preview"
    audio_transcription: str = "doubao-asr"
    image_generation: str = "dall-e-3"

    def for_capability(self, capability: Capability) -> str:
        return getattr(self, capability.value.replace("-", "_"))


class CapabilityRouter:
    """能力路由器。"""

    def __init__(self, lexicons: Optional[Lexicons] = None, models: Optional[RouteModels] = None):
        self._lexicons = lexicons or default_lexicons()
        self._models = models or RouteModels()

    @property
    def lexicons(self) -> Lexicons:
        return self._lexicons

    def decide(
        self,
        messages: Iterable[Union[Message, Dict[str, Any]]],
        page_context: Optional[str] = None,
        credentials: Optional[CredentialAvailability] = None,
        locale: Optional[str] = "zh-CN",
    ) -> RouteDecision:
        creds = credentials or CredentialAvailability()
        msgs = as_messages(messages)
        last_user = next((m for m in reversed(msgs) if m.role is Role.USER), None)

        if last_user is None:
            decision = self._default(creds, page_context, locale)
        else:
            decision = self._route(last_user, creds, page_context, locale)

        if decision.provider is Provider.BASE_TEXT and not creds.base_text:
            logger.error("基础文本模型未配置密钥，无法路由 capability=%s", decision.capability.value)
            raise ChatConfigError(BASELINE_MISSING)
        return decision

    def _route(
        self,
        message: Message,
        creds: CredentialAvailability,
        page_context: Optional[str],
        locale: Optional[str],
    ) -> RouteDecision:
        text = message.content
        lex = self._lexicons

        if has_category(message, AUDIO):
            return self._target(Capability.AUDIO_TRANSCRIPTION, creds, page_context, locale)
        if lex.wants_image_generation(text):
            return self._target(Capability.IMAGE_GENERATION, creds, page_context, locale)
        if has_category(message, IMAGE):
            return self._target(Capability.VISION, creds, page_context, locale)
        if lex.wants_video(text):
            return self._target(Capability.VIDEO, creds, page_context, locale)
        if lex.wants_audio_synthesis(text):
            return self._target(Capability.AUDIO, creds, page_context, locale)
        return self._default(creds, page_context, locale)

    def _target(
        self,
        capability: Capability,
        creds: CredentialAvailability,
        page_context: Optional[str],
        locale: Optional[str],
    ) -> RouteDecision:
        provider = CAPABILITY_PROVIDERS[capability]
        if getattr(creds, PROVIDER_CREDENTIALS[provider]):
            return RouteDecision(
                provider=provider,
                model=self._models.for_capability(capability),
                capability=capability,
                system_prompt=compose_system_prompt(capability, page_context, locale),
            )

        reason = FALLBACK_REASONS[capability]
        hard = capability is Capability.VISION
        notice = failure_notice(reason) if hard else degradation_notice(reason)
        logger.warning("能力 %s 缺少密钥，%s", capability.value, "返回配置失败提示" if hard else "降级为文本模式")
        return RouteDecision(
            provider=Provider.BASE_TEXT,
            model=self._models.text,
            capability=Capability.TEXT,
            system_prompt=compose_system_prompt(Capability.TEXT, page_context, locale, notice=notice),
            degraded=True,
            reason=reason,
            hard_failure=hard,
        )

    def _default(
        self,
        creds: CredentialAvailability,
        page_context: Optional[str],
        locale: Optional[str],
    ) -> RouteDecision:
        # 基础密钥缺失由 decide 统一抛出，这里只提示可选密钥
        missing = tuple(k for k in creds.missing_keys() if not k.startswith("DEEPSEEK_API_KEY"))
        notice = missing_keys_notice(missing) if missing else None
        return RouteDecision(
            provider=Provider.BASE_TEXT,
            model=self._models.text,
            capability=Capability.TEXT,
            system_prompt=compose_system_prompt(Capability.TEXT, page_context, locale, notice=notice),
            missing_keys=missing,
        )


__all__ = ["CapabilityRouter", "RouteModels", "PROVIDER_CREDENTIALS", "CAPABILITY_PROVIDERS", "FALLBACK_REASONS"]
