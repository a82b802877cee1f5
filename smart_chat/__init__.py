"""智能路由对话核心：能力路由、上游调度与流式传输。"""
import logging

from .client import AsyncSmartChatClient, SmartChatClient
from .config import CredentialAvailability, DispatchConfig, DispatchSettings, ProviderEndpoint, load_env_file
from .direct import DirectAPIConfig, DirectChatClient, DirectProvider
from .dispatch import AsyncChatDispatcher, ChatDispatcher
from .exceptions import (
    ChatAbortedError,
    ChatAuthError,
    ChatConfigError,
    ChatError,
    ChatProviderError,
    ChatTransportError,
    ChatValidationError,
)
from .format import MessageFormatter, build_chat_body
from .lexicons import Lexicons, load_lexicons
from .models import Attachment, Capability, Message, Provider, Role, RouteDecision, StreamDelta, StreamResult
from .router import CapabilityRouter, RouteModels
from .stream import CancelToken, SSEDecoder, StreamClient

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    # 客户端
    "SmartChatClient",
    "AsyncSmartChatClient",
    "DirectChatClient",
    # 核心组件
    "CapabilityRouter",
    "RouteModels",
    "MessageFormatter",
    "build_chat_body",
    "ChatDispatcher",
    "AsyncChatDispatcher",
    "StreamClient",
    "SSEDecoder",
    "CancelToken",
    "Lexicons",
    "load_lexicons",
    # 配置
    "CredentialAvailability",
    "DispatchConfig",
    "DispatchSettings",
    "ProviderEndpoint",
    "DirectAPIConfig",
    "DirectProvider",
    "load_env_file",
    # 数据模型
    "Attachment",
    "Message",
    "Role",
    "Provider",
    "Capability",
    "RouteDecision",
    "StreamDelta",
    "StreamResult",
    # 异常
    "ChatError",
    "ChatConfigError",
    "ChatValidationError",
    "ChatTransportError",
    "ChatAbortedError",
    "ChatAuthError",
    "ChatProviderError",
]
