"""智能对话客户端：路由 → 调度 → 流式回调。"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, Optional, Union

from .config import CredentialAvailability, DispatchConfig
from .dispatch import AsyncChatDispatcher, ChatDispatcher
from .exceptions import ChatAbortedError, ChatAuthError, ChatConfigError, ChatProviderError, ChatTransportError, ChatValidationError
from .models import Message, RouteDecision, StreamResult, as_messages
from .router import CapabilityRouter
from .stream import CancelToken, Sink, deliver

logger = logging.getLogger(__name__)

MessagesLike = Iterable[Union[Message, Dict[str, Any]]]
CredentialSource = Callable[[], CredentialAvailability]


class _BaseSmartChatClient:
    """客户端基类（提取公共方法）。"""
    # 异常类作为类属性，方便外部通过 SmartChatClient.ConfigError 访问
    ConfigError = ChatConfigError
    ValidationError = ChatValidationError
    TransportError = ChatTransportError
    AbortedError = ChatAbortedError
    AuthError = ChatAuthError
    ProviderError = ChatProviderError

    def __init__(
        self,
        dispatcher: Union[ChatDispatcher, AsyncChatDispatcher],
        router: Optional[CapabilityRouter],
        credentials: Optional[Union[CredentialAvailability, CredentialSource]],
        locale: Optional[str],
    ):
        self._dispatcher = dispatcher
        self._router = router or CapabilityRouter()
        self._credentials = credentials
        self._locale = locale
        self._lock = threading.Lock()
        self._active: Optional[CancelToken] = None

    def _current_credentials(self, fallback: CredentialAvailability) -> CredentialAvailability:
        if self._credentials is None:
            return fallback
        if isinstance(self._credentials, CredentialAvailability):
            return self._credentials
        return self._credentials()

    def route(self, messages: MessagesLike, page_context: Optional[str] = None) -> RouteDecision:
        """只计算路由结果，不发送请求。"""
        return self._router.decide(
            as_messages(messages), page_context, self._current_credentials(self._default_credentials()), self._locale
        )

    def _default_credentials(self) -> CredentialAvailability:
        return self._dispatcher.config.availability()

    def _begin_turn(self) -> CancelToken:
        """开始新一轮，同时取消仍在进行中的上一轮。"""
        token = CancelToken()
        with self._lock:
            previous, self._active = self._active, token
        if previous is not None and not previous.cancelled:
            logger.info("新一轮对话开始，取消上一轮请求")
            previous.cancel()
        return token

    def _end_turn(self, token: CancelToken) -> None:
        with self._lock:
            if self._active is token:
                self._active = None

    def cancel(self) -> None:
        with self._lock:
            token = self._active
        if token is not None:
            token.cancel()

    @staticmethod
    def _log_decision(trace_id: str, decision: RouteDecision) -> None:
        logger.info(
            "路由 trace_id=%s capability=%s provider=%s model=%s",
            trace_id, decision.capability.value, decision.provider.value, decision.model,
        )
        if decision.degraded:
            logger.warning("降级 trace_id=%s hard=%s: %s", trace_id, decision.hard_failure, decision.reason)


class SmartChatClient(_BaseSmartChatClient):
    """同步智能对话客户端。"""

    def __init__(
        self,
        dispatcher: ChatDispatcher,
        router: Optional[CapabilityRouter] = None,
        credentials: Optional[Union[CredentialAvailability, CredentialSource]] = None,
        locale: Optional[str] = "zh-CN",
    ):
        super().__init__(dispatcher, router, credentials, locale)

    @classmethod
    def from_env(cls, router: Optional[CapabilityRouter] = None, locale: Optional[str] = "zh-CN"):
        return cls(ChatDispatcher(DispatchConfig.from_env()), router, CredentialAvailability.from_env, locale)

    def send(
        self,
        messages: MessagesLike,
        on_content: Optional[Sink],
        on_reasoning: Optional[Sink] = None,
        *,
        page_context: Optional[str] = None,
        reasoning: bool = False,
    ) -> StreamResult:
        start = time.time()
        trace_id = str(uuid.uuid4())
        msgs = as_messages(messages)
        decision = self.route(msgs, page_context)
        self._log_decision(trace_id, decision)

        token = self._begin_turn()
        result = StreamResult()
        deltas = self._dispatcher.stream(decision, msgs, token, reasoning=reasoning)
        try:
            for delta in deltas:
                deliver(delta, on_content, on_reasoning, token)
                result.add(delta)
        except ChatAbortedError:
            logger.info("已取消 trace_id=%s 已输出=%d 字符", trace_id, len(result.content))
            raise
        finally:
            deltas.close()
            self._end_turn(token)
        logger.info("完成 trace_id=%s 耗时=%.2fs", trace_id, time.time() - start)
        return result

    def close(self) -> None:
        self.cancel()
        self._dispatcher.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class AsyncSmartChatClient(_BaseSmartChatClient):
    """异步智能对话客户端。"""

    def __init__(
        self,
        dispatcher: AsyncChatDispatcher,
        router: Optional[CapabilityRouter] = None,
        credentials: Optional[Union[CredentialAvailability, CredentialSource]] = None,
        locale: Optional[str] = "zh-CN",
    ):
        super().__init__(dispatcher, router, credentials, locale)

    @classmethod
    def from_env(cls, router: Optional[CapabilityRouter] = None, locale: Optional[str] = "zh-CN"):
        return cls(AsyncChatDispatcher(DispatchConfig.from_env()), router, CredentialAvailability.from_env, locale)

    async def send(
        self,
        messages: MessagesLike,
        on_content: Optional[Sink],
        on_reasoning: Optional[Sink] = None,
        *,
        page_context: Optional[str] = None,
        reasoning: bool = False,
    ) -> StreamResult:
        start = time.time()
        trace_id = str(uuid.uuid4())
        msgs = as_messages(messages)
        decision = self.route(msgs, page_context)
        self._log_decision(trace_id, decision)

        token = self._begin_turn()
        result = StreamResult()
        deltas = self._dispatcher.stream(decision, msgs, token, reasoning=reasoning)
        try:
            async for delta in deltas:
                deliver(delta, on_content, on_reasoning, token)
                result.add(delta)
        except ChatAbortedError:
            logger.info("异步已取消 trace_id=%s 已输出=%d 字符", trace_id, len(result.content))
            raise
        finally:
            await deltas.aclose()
            self._end_turn(token)
        logger.info("异步完成 trace_id=%s 耗时=%.2fs", trace_id, time.time() - start)
        return result

    async def aclose(self) -> None:
        self.cancel()
        await self._dispatcher.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()


__all__ = ["SmartChatClient", "AsyncSmartChatClient"]
