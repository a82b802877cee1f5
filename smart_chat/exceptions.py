"""异常类定义。"""
from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """smart_chat 基础异常。"""
    kind = "error"


class ChatConfigError(ChatError, RuntimeError):
    """配置错误（基础文本模型缺少密钥等），本轮对话无法继续。"""
    kind = "configuration-missing"


class ChatValidationError(ChatError, ValueError):
    """输入验证错误。"""
    kind = "validation"


class ChatTransportError(ChatError, RuntimeError):
    """传输错误。"""
    kind = "transport"

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code

    def to_dict(self):
        return {"kind": self.kind, "message": str(self)}


class ChatAbortedError(ChatTransportError):
    """调用方主动取消，不属于需要上报的错误。"""
    kind = "aborted"


class ChatAuthError(ChatTransportError):
    """需要用户重新认证或配置密钥，重试无效。"""
    kind = "auth-required"


class ChatProviderError(ChatTransportError):
    """上游请求失败（网络异常、非 2xx、响应格式错误），调用方可重试。"""
    kind = "provider-error"


__all__ = [
    "ChatError",
    "ChatConfigError",
    "ChatValidationError",
    "ChatTransportError",
    "ChatAbortedError",
    "ChatAuthError",
    "ChatProviderError",
]
