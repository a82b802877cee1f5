"""上游调度：按路由结果构建请求、发送并产出流式增量。"""
from __future__ import annotations

import base64
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional, Union

from .attachments import AUDIO, classify
from .config import DispatchConfig, ProviderEndpoint
from .exceptions import ChatAbortedError, ChatAuthError, ChatConfigError, ChatProviderError, ChatValidationError
from .format import build_chat_body
from .models import Attachment, Capability, Message, Provider, Role, RouteDecision, StreamDelta, as_messages
from .stream import CancelToken, StreamClient, until_cancelled
from .utils import _get, strip_emoji

try:
    import httpx
    import requests
except ImportError as e:
    raise ImportError("需要 requests 与 httpx: pip install requests httpx") from e

try:
    from openai import AsyncOpenAI, OpenAI
    import openai
except ImportError as e:
    raise ImportError("需要 openai SDK: pip install openai") from e

logger = logging.getLogger(__name__)

# 这两类能力上游不支持流式，整段结果作为一次增量返回
BLOCKING_CAPABILITIES = frozenset({Capability.IMAGE_GENERATION, Capability.AUDIO_TRANSCRIPTION})
AUTH_STATUS = (401, 403)

MessagesLike = Iterable[Union[Message, Dict[str, Any]]]
ClientFactory = Callable[[ProviderEndpoint, Optional[float]], Any]


class _BaseDispatcher:
    """调度器基类（提取公共方法）。"""
    ConfigError = ChatConfigError
    ValidationError = ChatValidationError
    AbortedError = ChatAbortedError
    AuthError = ChatAuthError
    ProviderError = ChatProviderError

    def __init__(self, config: DispatchConfig):
        self._config = config
        self._endpoints: Dict[Provider, ProviderEndpoint] = {
            Provider.BASE_TEXT: config.base_text,
            Provider.VISION: config.vision,
            Provider.MULTIMODAL: config.multimodal,
            Provider.TRANSCRIPTION: config.transcription,
        }

    @property
    def config(self) -> DispatchConfig:
        return self._config

    def endpoint(self, provider: Provider) -> ProviderEndpoint:
        endpoint = self._endpoints.get(Provider(provider))
        if endpoint is None:
            raise ChatConfigError(f"未配置提供商端点: {provider}")
        if not endpoint.configured:
            raise ChatAuthError(f"{Provider(provider).value} 未配置 API 密钥", provider=Provider(provider).value)
        return endpoint

    def format(self, decision: RouteDecision, messages: MessagesLike, *, model: Optional[str] = None) -> Dict[str, Any]:
        return build_chat_body(decision, messages, self._config.settings, model=model)

    def _headers(self, endpoint: ProviderEndpoint) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {endpoint.api_key}",
        }

    def _chat_url(self, endpoint: ProviderEndpoint) -> str:
        return f"{endpoint.base_url}/chat/completions"

    @staticmethod
    def _status_error(status: int, text: str, provider: Provider) -> Exception:
        name = Provider(provider).value
        message = f"{name} API 请求失败: {status} - {text[:500]}"
        if status in AUTH_STATUS:
            return ChatAuthError(message, provider=name, status_code=status)
        return ChatProviderError(message, provider=name, status_code=status)

    def _wants_reasoner(self, decision: RouteDecision, reasoning: bool) -> bool:
        return reasoning and decision.provider is Provider.BASE_TEXT and bool(self._config.settings.reasoner_model)

    def _post_process(self, delta: StreamDelta) -> Optional[StreamDelta]:
        if not self._config.settings.strip_emoji:
            return delta
        cleaned = StreamDelta(content=strip_emoji(delta.content), reasoning=strip_emoji(delta.reasoning))
        if not cleaned.content and not cleaned.reasoning:
            return None
        return cleaned

    @staticmethod
    def _last_user(messages: List[Message]) -> Message:
        last_user = next((m for m in reversed(messages) if m.role is Role.USER), None)
        if last_user is None:
            raise ChatValidationError("对话中没有用户消息")
        return last_user

    @staticmethod
    def _audio_attachment(messages: List[Message]) -> Attachment:
        last_user = _BaseDispatcher._last_user(messages)
        audio = next((f for f in last_user.files if classify(f) == AUDIO), None)
        if audio is None:
            raise ChatValidationError("语音识别请求缺少音频附件")
        return audio

    @staticmethod
    def _decode_inline(attachment: Attachment) -> bytes:
        data = attachment.data or ""
        if data.startswith("data:"):
            data = data.split(",", 1)[-1]
        elif data.startswith("base64:"):
            data = data[len("base64:"):]
        try:
            return base64.b64decode(data, validate=True)
        except (ValueError, TypeError) as exc:
            raise ChatValidationError(f"附件 {attachment.name!r} 不是合法的 base64 数据") from exc

    @staticmethod
    def _image_delta(resp: Any, prompt: str) -> StreamDelta:
        data = _get(resp, "data") or []
        if not data:
            raise ChatProviderError("图像生成响应中没有结果", provider=Provider.MULTIMODAL.value)
        item = data[0]
        url = _get(item, "url")
        if not url:
            b64 = _get(item, "b64_json")
            if not b64:
                raise ChatProviderError("图像生成响应缺少图片地址", provider=Provider.MULTIMODAL.value)
            url = f"data:image/png;base64,{b64}"
        content = f"![{prompt}]({url})"
        revised = _get(item, "revised_prompt")
        if revised:
            content += f"\n\n> {revised}"
        return StreamDelta(content=content)

    @staticmethod
    def _transcription_delta(resp: Any) -> StreamDelta:
        text = resp if isinstance(resp, str) else _get(resp, "text")
        if not isinstance(text, str):
            raise ChatProviderError("语音识别响应缺少文本", provider=Provider.TRANSCRIPTION.value)
        return StreamDelta(content=text)

    @staticmethod
    def _sdk_error(exc: Exception, provider: Provider) -> Exception:
        name = Provider(provider).value
        message = f"{exc.__class__.__name__}: {exc}"
        status = getattr(exc, "status_code", None)
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return ChatAuthError(message, provider=name, status_code=status)
        return ChatProviderError(message, provider=name, status_code=status)


def _default_openai_factory(endpoint: ProviderEndpoint, timeout: Optional[float]) -> Any:
    kwargs: Dict[str, Any] = {"api_key": endpoint.api_key, "base_url": endpoint.base_url}
    if timeout is not None:
        kwargs["timeout"] = timeout
    return OpenAI(**kwargs)


def _default_async_openai_factory(endpoint: ProviderEndpoint, timeout: Optional[float]) -> Any:
    kwargs: Dict[str, Any] = {"api_key": endpoint.api_key, "base_url": endpoint.base_url}
    if timeout is not None:
        kwargs["timeout"] = timeout
    return AsyncOpenAI(**kwargs)


class ChatDispatcher(_BaseDispatcher):
    """同步调度器（requests）。"""

    def __init__(
        self,
        config: DispatchConfig,
        session: Optional[requests.Session] = None,
        openai_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(config)
        self._session = session or requests.Session()
        self._openai_factory = openai_factory or _default_openai_factory

    @classmethod
    def from_env(cls) -> "ChatDispatcher":
        return cls(DispatchConfig.from_env())

    def stream(
        self,
        decision: RouteDecision,
        messages: MessagesLike,
        cancel_token: Optional[CancelToken] = None,
        *,
        reasoning: bool = False,
    ) -> Iterator[StreamDelta]:
        token = cancel_token or CancelToken()
        msgs = as_messages(messages)
        token.raise_if_cancelled()
        if decision.capability in BLOCKING_CAPABILITIES:
            delta = self._post_process(self._complete(decision, msgs, token))
            if delta is not None:
                yield delta
            return

        response = self._open(decision, msgs, token, reasoning)
        deltas = StreamClient(token).iter_deltas(self._iter_body(response, decision.provider, token))
        try:
            for delta in deltas:
                delta = self._post_process(delta)
                if delta is not None:
                    yield delta
        finally:
            deltas.close()

    def send(self, body: Dict[str, Any], provider: Provider, cancel_token: Optional[CancelToken] = None) -> Iterator[bytes]:
        """发送已格式化的请求体，返回响应字节流。"""
        token = cancel_token or CancelToken()
        response = self._post(body, provider, token)
        return self._iter_body(response, provider, token)

    def _open(self, decision: RouteDecision, msgs: List[Message], token: CancelToken, reasoning: bool) -> requests.Response:
        if self._wants_reasoner(decision, reasoning):
            reasoner = self._config.settings.reasoner_model
            try:
                return self._post(self.format(decision, msgs, model=reasoner), decision.provider, token)
            except ChatAuthError:
                raise
            except ChatProviderError as exc:
                if exc.status_code is None:
                    raise
                logger.warning("推理模型 %s 请求失败 (%s)，改用 %s", reasoner, exc.status_code, decision.model)
        return self._post(self.format(decision, msgs), decision.provider, token)

    def _post(self, body: Dict[str, Any], provider: Provider, token: CancelToken) -> requests.Response:
        endpoint = self.endpoint(provider)
        url = self._chat_url(endpoint)
        logger.info("请求 %s model=%s", url, body.get("model"))
        # 等待响应头期间被取消时关闭连接池，阻塞中的请求随之失败
        token.add_callback(self._session.close)
        try:
            response = self._session.post(
                url,
                json=body,
                headers=self._headers(endpoint),
                stream=True,
                timeout=self._config.request_timeout,
            )
        except requests.RequestException as e:
            token.raise_if_cancelled()
            error_msg = f"{e.__class__.__name__}: {str(e)}"
            logger.error("传输错误 provider=%s: %s", Provider(provider).value, error_msg)
            raise ChatProviderError(error_msg, provider=Provider(provider).value) from e
        finally:
            token.remove_callback(self._session.close)

        if token.cancelled:
            response.close()
            raise ChatAbortedError("请求已取消")
        if response.status_code >= 400:
            try:
                text = response.text
            finally:
                response.close()
            error = self._status_error(response.status_code, text, provider)
            logger.error("API 错误 provider=%s status=%s", Provider(provider).value, response.status_code)
            raise error
        return response

    def _iter_body(self, response: requests.Response, provider: Provider, token: CancelToken) -> Iterator[bytes]:
        token.add_callback(response.close)
        try:
            for chunk in response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            token.raise_if_cancelled()
            logger.error("读取响应失败 provider=%s: %s", Provider(provider).value, e)
            raise ChatProviderError(f"读取响应失败: {e}", provider=Provider(provider).value) from e
        finally:
            token.remove_callback(response.close)
            response.close()

    def _complete(self, decision: RouteDecision, msgs: List[Message], token: CancelToken) -> StreamDelta:
        endpoint = self.endpoint(decision.provider)
        with self._openai_factory(endpoint, self._config.request_timeout) as client:
            # 关闭 SDK 客户端会中断阻塞中的请求
            token.add_callback(client.close)
            try:
                if decision.capability is Capability.IMAGE_GENERATION:
                    prompt = self._last_user(msgs).content
                    logger.info("图像生成 model=%s", decision.model)
                    resp = client.images.generate(model=decision.model, prompt=prompt, n=1, size="1024x1024")
                    delta = self._image_delta(resp, prompt)
                else:
                    audio = self._audio_attachment(msgs)
                    logger.info("语音识别 model=%s file=%s", decision.model, audio.name)
                    payload = self._audio_bytes(audio)
                    resp = client.audio.transcriptions.create(model=decision.model, file=(audio.name or "audio", payload))
                    delta = self._transcription_delta(resp)
            except openai.APIError as e:
                token.raise_if_cancelled()
                logger.error("API 错误 provider=%s: %s", decision.provider.value, e)
                raise self._sdk_error(e, decision.provider) from e
            finally:
                token.remove_callback(client.close)
        token.raise_if_cancelled()
        return delta

    def _audio_bytes(self, attachment: Attachment) -> bytes:
        if attachment.data:
            return self._decode_inline(attachment)
        try:
            response = self._session.get(attachment.url, timeout=self._config.request_timeout or 30)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("下载音频失败 %s: %s", attachment.url, e)
            raise ChatProviderError(f"下载音频失败: {attachment.url}", provider=Provider.TRANSCRIPTION.value) from e
        return response.content

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class AsyncChatDispatcher(_BaseDispatcher):
    """异步调度器（httpx）。"""

    def __init__(
        self,
        config: DispatchConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        openai_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(config)
        self._http = http_client or httpx.AsyncClient(timeout=config.request_timeout)
        self._openai_factory = openai_factory or _default_async_openai_factory

    @classmethod
    def from_env(cls) -> "AsyncChatDispatcher":
        return cls(DispatchConfig.from_env())

    async def stream(
        self,
        decision: RouteDecision,
        messages: MessagesLike,
        cancel_token: Optional[CancelToken] = None,
        *,
        reasoning: bool = False,
    ) -> AsyncIterator[StreamDelta]:
        token = cancel_token or CancelToken()
        msgs = as_messages(messages)
        token.raise_if_cancelled()
        if decision.capability in BLOCKING_CAPABILITIES:
            delta = self._post_process(await self._complete(decision, msgs, token))
            if delta is not None:
                yield delta
            return

        response = await self._open(decision, msgs, token, reasoning)
        deltas = StreamClient(token).aiter_deltas(self._iter_body(response, decision.provider))
        try:
            async for delta in deltas:
                delta = self._post_process(delta)
                if delta is not None:
                    yield delta
        finally:
            await deltas.aclose()
            await response.aclose()

    async def _open(self, decision: RouteDecision, msgs: List[Message], token: CancelToken, reasoning: bool) -> httpx.Response:
        if self._wants_reasoner(decision, reasoning):
            reasoner = self._config.settings.reasoner_model
            try:
                return await self._post(self.format(decision, msgs, model=reasoner), decision.provider, token)
            except ChatAuthError:
                raise
            except ChatProviderError as exc:
                if exc.status_code is None:
                    raise
                logger.warning("推理模型 %s 请求失败 (%s)，改用 %s", reasoner, exc.status_code, decision.model)
        return await self._post(self.format(decision, msgs), decision.provider, token)

    async def _post(self, body: Dict[str, Any], provider: Provider, token: CancelToken) -> httpx.Response:
        endpoint = self.endpoint(provider)
        url = self._chat_url(endpoint)
        logger.info("异步请求 %s model=%s", url, body.get("model"))
        request = self._http.build_request("POST", url, json=body, headers=self._headers(endpoint))
        try:
            response = await until_cancelled(self._http.send(request, stream=True), token)
        except httpx.HTTPError as e:
            token.raise_if_cancelled()
            error_msg = f"{e.__class__.__name__}: {str(e)}"
            logger.error("传输错误 provider=%s: %s", Provider(provider).value, error_msg)
            raise ChatProviderError(error_msg, provider=Provider(provider).value) from e

        if response.status_code >= 400:
            try:
                text = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            logger.error("API 错误 provider=%s status=%s", Provider(provider).value, response.status_code)
            raise self._status_error(response.status_code, text, provider)
        return response

    async def _iter_body(self, response: httpx.Response, provider: Provider) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as e:
            logger.error("读取响应失败 provider=%s: %s", Provider(provider).value, e)
            raise ChatProviderError(f"读取响应失败: {e}", provider=Provider(provider).value) from e

    async def _complete(self, decision: RouteDecision, msgs: List[Message], token: CancelToken) -> StreamDelta:
        endpoint = self.endpoint(decision.provider)
        async with self._openai_factory(endpoint, self._config.request_timeout) as client:
            try:
                if decision.capability is Capability.IMAGE_GENERATION:
                    prompt = self._last_user(msgs).content
                    logger.info("异步图像生成 model=%s", decision.model)
                    resp = await until_cancelled(
                        client.images.generate(model=decision.model, prompt=prompt, n=1, size="1024x1024"), token
                    )
                    delta = self._image_delta(resp, prompt)
                else:
                    audio = self._audio_attachment(msgs)
                    logger.info("异步语音识别 model=%s file=%s", decision.model, audio.name)
                    payload = await self._audio_bytes(audio, token)
                    resp = await until_cancelled(
                        client.audio.transcriptions.create(model=decision.model, file=(audio.name or "audio", payload)),
                        token,
                    )
                    delta = self._transcription_delta(resp)
            except openai.APIError as e:
                token.raise_if_cancelled()
                logger.error("API 错误 provider=%s: %s", decision.provider.value, e)
                raise self._sdk_error(e, decision.provider) from e
        token.raise_if_cancelled()
        return delta

    async def _audio_bytes(self, attachment: Attachment, token: CancelToken) -> bytes:
        if attachment.data:
            return self._decode_inline(attachment)
        try:
            response = await until_cancelled(self._http.get(attachment.url), token)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("下载音频失败 %s: %s", attachment.url, e)
            raise ChatProviderError(f"下载音频失败: {attachment.url}", provider=Provider.TRANSCRIPTION.value) from e
        return response.content

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()


__all__ = ["ChatDispatcher", "AsyncChatDispatcher", "BLOCKING_CAPABILITIES"]
