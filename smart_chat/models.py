"""数据模型定义。"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .exceptions import ChatValidationError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Provider(str, Enum):
    """上游提供商（封闭集合，新增成员需同时更新路由模型表与格式化表）。"""
    BASE_TEXT = "base-text"
    VISION = "vision"
    MULTIMODAL = "multimodal"
    TRANSCRIPTION = "transcription"


class Capability(str, Enum):
    TEXT = "text"
    VISION = "vision"
    VIDEO = "video"
    AUDIO = "audio"
    AUDIO_TRANSCRIPTION = "audio-transcription"
    IMAGE_GENERATION = "image-generation"


@dataclass(frozen=True, slots=True)
class Attachment:
    """用户上传的文件引用，url 与 data（base64）二选一。"""

    name: str
    mime_type: Optional[str] = None
    url: Optional[str] = None
    data: Optional[str] = None

    def __post_init__(self):
        if (self.url is None) == (self.data is None):
            raise ChatValidationError(f"附件 {self.name!r} 必须且只能提供 url 或 data 之一")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Attachment":
        if not isinstance(raw, dict):
            raise ChatValidationError("附件必须为字典")
        return cls(
            name=raw.get("name") or "",
            mime_type=raw.get("type") or raw.get("mime_type") or raw.get("mimeType") or None,
            url=raw.get("url") or None,
            data=raw.get("data") or raw.get("content") or raw.get("payload") or None,
        )


@dataclass(frozen=True, slots=True)
class Message:
    """一轮对话消息，发送后不可修改。"""

    role: Role
    content: str = ""
    files: Tuple[Attachment, ...] = ()

    def __post_init__(self):
        try:
            role = Role(self.role)
        except ValueError as exc:
            raise ChatValidationError(f"不支持的消息角色: {self.role}") from exc
        object.__setattr__(self, "role", role)
        if not isinstance(self.content, str):
            raise ChatValidationError("消息内容必须为字符串")
        object.__setattr__(self, "files", tuple(self.files))
        if not self.content and not self.files:
            raise ChatValidationError("消息内容为空时必须附带文件")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Message":
        if not isinstance(raw, dict):
            raise ChatValidationError("消息必须为字典")
        files = tuple(Attachment.from_dict(f) for f in raw.get("files") or ())
        return cls(role=raw.get("role"), content=raw.get("content") or "", files=files)


def as_messages(items: Iterable[Union[Message, Dict[str, Any]]]) -> List[Message]:
    """统一为 Message 列表，字典按前端消息结构解析。"""
    messages: List[Message] = []
    for item in items:
        messages.append(item if isinstance(item, Message) else Message.from_dict(item))
    return messages


@dataclass(frozen=True, slots=True)
class RouteDecision:
    """路由结果，每轮重新计算，不做持久化。"""

    provider: Provider
    model: str
    capability: Capability
    system_prompt: str
    degraded: bool = False
    reason: Optional[str] = None
    hard_failure: bool = False
    missing_keys: Tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "capability": self.capability.value,
            "systemPrompt": self.system_prompt,
            "degraded": self.degraded,
            "reason": self.reason,
            "hardFailure": self.hard_failure,
            "missingKeys": list(self.missing_keys),
        }


@dataclass(frozen=True, slots=True)
class StreamDelta:
    """流式增量，content / reasoning 均可能为空。"""

    content: str = ""
    reasoning: str = ""


@dataclass(slots=True)
class StreamResult:
    """一次请求累积的完整文本。"""

    content: str = ""
    reasoning: str = ""
    deltas: List[StreamDelta] = field(default_factory=list)

    def add(self, delta: StreamDelta) -> None:
        self.content += delta.content
        self.reasoning += delta.reasoning
        self.deltas.append(delta)


__all__ = [
    "Role",
    "Provider",
    "Capability",
    "Attachment",
    "Message",
    "as_messages",
    "RouteDecision",
    "StreamDelta",
    "StreamResult",
]
