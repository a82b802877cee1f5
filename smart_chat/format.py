"""上游消息格式化。"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

from .attachments import describe, images_of
from .config import DispatchSettings
from .exceptions import ChatConfigError
from .models import Attachment, Message, Provider, RouteDecision, as_messages

TEXT_FAMILY = "text"
MULTIMODAL_FAMILY = "multimodal"

# 每个提供商必须在此登记消息格式
PROVIDER_FAMILIES: Dict[Provider, str] = {
    Provider.BASE_TEXT: TEXT_FAMILY,
    Provider.VISION: MULTIMODAL_FAMILY,
    Provider.MULTIMODAL: MULTIMODAL_FAMILY,
    Provider.TRANSCRIPTION: TEXT_FAMILY,
}

DEFAULT_IMAGE_PROMPT = "请分析这张图片"
DEFAULT_IMAGE_MIME = "image/jpeg"


class MessageFormatter:
    """按提供商消息结构格式化对话，纯函数。"""

    @staticmethod
    def family(provider: Provider) -> str:
        try:
            return PROVIDER_FAMILIES[Provider(provider)]
        except (KeyError, ValueError) as exc:
            raise ChatConfigError(f"未登记消息格式的提供商: {provider}") from exc

    @staticmethod
    def format(
        messages: Iterable[Union[Message, Dict[str, Any]]],
        provider: Provider,
        system_prompt: str,
    ) -> List[Dict[str, Any]]:
        family = MessageFormatter.family(provider)
        formatted: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for msg in as_messages(messages):
            if family == TEXT_FAMILY:
                formatted.append(MessageFormatter._to_text(msg))
            else:
                formatted.append(MessageFormatter._to_multimodal(msg))
        return formatted

    @staticmethod
    def text_messages(messages: Iterable[Union[Message, Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """纯文本格式，不附加系统提示。"""
        return [MessageFormatter._to_text(msg) for msg in as_messages(messages)]

    @staticmethod
    def _to_text(msg: Message) -> Dict[str, Any]:
        content = msg.content
        if msg.files:
            # 文本模型不接收文件内容，仅在文本中说明
            content = f"[用户上传了{describe(msg.files)}]\n\n{content}"
        return {"role": msg.role.value, "content": content}

    @staticmethod
    def _to_multimodal(msg: Message) -> Dict[str, Any]:
        images = images_of(msg)
        if not images:
            return {"role": msg.role.value, "content": msg.content}
        text = msg.content if msg.content.strip() else DEFAULT_IMAGE_PROMPT
        parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": image_url(image)}})
        return {"role": msg.role.value, "content": parts}


def image_url(attachment: Attachment) -> str:
    """远程 URL 原样返回，base64 数据补全 data URI 前缀。"""
    if attachment.url:
        return attachment.url
    data = attachment.data or ""
    if data.startswith("data:"):
        return data
    if data.startswith("base64:"):
        data = data[len("base64:"):]
    mime = attachment.mime_type or DEFAULT_IMAGE_MIME
    return f"data:{mime};base64,{data}"


def build_chat_body(
    decision: RouteDecision,
    messages: Iterable[Union[Message, Dict[str, Any]]],
    settings: Optional[DispatchSettings] = None,
    *,
    model: Optional[str] = None,
    stream: bool = True,
) -> Dict[str, Any]:
    """OpenAI 兼容的 chat/completions 请求体。"""
    settings = settings or DispatchSettings()
    return {
        "model": model or decision.model,
        "messages": MessageFormatter.format(messages, decision.provider, decision.system_prompt),
        "stream": stream,
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
    }


__all__ = ["MessageFormatter", "PROVIDER_FAMILIES", "build_chat_body", "image_url"]
