"""直连模式：不经过路由，直接调用用户配置的单一提供商。

openai / deepseek 走流式接口；anthropic / gemini 不支持流式，
整段结果作为一次回调输出，调用方除延迟外无法区分。
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import _env_float
from .exceptions import ChatAbortedError, ChatAuthError, ChatConfigError, ChatProviderError, ChatTransportError, ChatValidationError
from .format import MessageFormatter
from .models import Message, StreamDelta, StreamResult
from .stream import CancelToken, Sink, StreamClient, deliver
from .utils import _get

try:
    import requests
except ImportError as e:
    raise ImportError("需要 requests: pip install requests") from e

try:
    import google.genai as genai
    from google.genai import errors as genai_errors
    from google.genai import types as genai_types
except ImportError as e:
    raise ImportError("需要 google-genai SDK: pip install google-genai") from e

logger = logging.getLogger(__name__)

EMPTY_REPLY = "抱歉，没有收到有效响应。"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_SYSTEM = "你是一个有用的AI助手。"


class DirectProvider(str, Enum):
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


STREAMING_PROVIDERS = frozenset({DirectProvider.OPENAI, DirectProvider.DEEPSEEK})

DEFAULT_BASE_URLS = {
    DirectProvider.OPENAI: "https://api.openai.com/v1",
    DirectProvider.DEEPSEEK: "https://api.deepseek.com/v1",
    DirectProvider.ANTHROPIC: "https://api.anthropic.com",
    DirectProvider.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
}

DEFAULT_MODELS = {
    DirectProvider.OPENAI: "gpt-4o-mini",
    DirectProvider.DEEPSEEK: "deepseek-chat",
    DirectProvider.ANTHROPIC: "claude-3-haiku-20240307",
    DirectProvider.GEMINI: "gemini-2.5-flash",
}


@dataclass(slots=True)
class DirectAPIConfig:
    """直连模式运行配置。"""
    provider: DirectProvider
    api_key: str
    base_url: Optional[str] = None
    model: Optional[str] = None
    request_timeout: Optional[float] = None
    temperature: float = 0.7
    max_tokens: int = 4000

    def __post_init__(self):
        try:
            self.provider = DirectProvider(self.provider)
        except ValueError as exc:
            raise ChatConfigError(f"不支持的提供商: {self.provider}") from exc
        self.base_url = (self.base_url or DEFAULT_BASE_URLS[self.provider]).rstrip("/")
        self.model = self.model or DEFAULT_MODELS[self.provider]

    @classmethod
    def from_env(cls):
        def req(k):
            v = os.environ.get(k)
            if not v or not v.strip():
                raise ChatConfigError(f"缺少环境变量: {k}")
            return v.strip()
        return cls(provider=req("LLM_PROVIDER").lower(), api_key=req("LLM_API_KEY"),
                   base_url=os.environ.get("LLM_API_BASE") or None, model=os.environ.get("LLM_MODEL") or None,
                   request_timeout=_env_float("LLM_TIMEOUT"))


class DirectChatClient:
    """直连客户端。"""
    ConfigError = ChatConfigError
    ValidationError = ChatValidationError
    TransportError = ChatTransportError
    AbortedError = ChatAbortedError
    AuthError = ChatAuthError
    ProviderError = ChatProviderError

    def __init__(self, config: DirectAPIConfig, session: Optional[requests.Session] = None, genai_client: Any = None):
        self._config = config
        self._session = session or requests.Session()
        self._genai_client = genai_client

    @classmethod
    def from_env(cls):
        return cls(DirectAPIConfig.from_env())

    @property
    def config(self) -> DirectAPIConfig:
        return self._config

    def send(
        self,
        messages: Iterable[Union[Message, Dict[str, Any]]],
        on_content: Optional[Sink],
        on_reasoning: Optional[Sink] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> StreamResult:
        start = time.time()
        trace_id = str(uuid.uuid4())
        token = cancel_token or CancelToken()
        provider = self._config.provider
        payload = MessageFormatter.text_messages(messages)
        if not payload:
            raise ChatValidationError("消息列表不能为空")
        logger.info("直连请求 trace_id=%s provider=%s model=%s", trace_id, provider.value, self._config.model)

        token.raise_if_cancelled()
        if provider in STREAMING_PROVIDERS:
            result = self._stream_chat(payload, on_content, on_reasoning, token)
        else:
            # 不支持流式的提供商：一次性获取完整结果后按流式回调输出
            if provider is DirectProvider.ANTHROPIC:
                delta = self._call_anthropic(payload)
            else:
                delta = self._call_gemini(payload)
            token.raise_if_cancelled()
            result = StreamResult()
            deliver(delta, on_content, on_reasoning, token)
            result.add(delta)
        logger.info("直连完成 trace_id=%s 耗时=%.2fs", trace_id, time.time() - start)
        return result

    def _stream_chat(self, payload: List[Dict[str, Any]], on_content, on_reasoning, token: CancelToken) -> StreamResult:
        body = {
            "model": self._config.model,
            "messages": payload,
            "stream": True,
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_tokens,
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._config.api_key}"}
        response = self._post(f"{self._config.base_url}/chat/completions", body, headers, stream=True)
        token.add_callback(response.close)
        try:
            return StreamClient(token).consume(response.iter_content(chunk_size=None), on_content, on_reasoning)
        except requests.RequestException as e:
            token.raise_if_cancelled()
            raise ChatProviderError(f"读取响应失败: {e}", provider=self._config.provider.value) from e
        finally:
            token.remove_callback(response.close)
            response.close()

    def _call_anthropic(self, payload: List[Dict[str, Any]]) -> StreamDelta:
        # Anthropic 不接受 messages 中的 system 角色
        system = next((m["content"] for m in payload if m["role"] == "system"), None)
        body = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "system": system or DEFAULT_SYSTEM,
            "messages": [m for m in payload if m["role"] != "system"],
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        response = self._post(f"{self._config.base_url}/v1/messages", body, headers)
        try:
            data = response.json()
        except ValueError as e:
            raise ChatProviderError("Anthropic 响应不是合法 JSON", provider=DirectProvider.ANTHROPIC.value) from e
        blocks = _get(data, "content") or []
        text = "".join(_get(b, "text", "") for b in blocks if _get(b, "type") == "text")
        reasoning = "".join(_get(b, "thinking", "") for b in blocks if _get(b, "type") == "thinking")
        return StreamDelta(content=text or EMPTY_REPLY, reasoning=reasoning)

    def _call_gemini(self, payload: List[Dict[str, Any]]) -> StreamDelta:
        system = next((m["content"] for m in payload if m["role"] == "system"), None)
        contents = [
            genai_types.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[genai_types.Part(text=m["content"])],
            )
            for m in payload
            if m["role"] != "system"
        ]
        config_kwargs: Dict[str, Any] = {
            "temperature": self._config.temperature,
            "max_output_tokens": self._config.max_tokens,
        }
        if system:
            config_kwargs["system_instruction"] = system
        try:
            resp = self._gemini().models.generate_content(
                model=self._config.model,
                contents=contents,
                config=genai_types.GenerateContentConfig(**config_kwargs),
            )
        except genai_errors.APIError as e:
            error_msg = f"{e.__class__.__name__}: {str(e)}"
            logger.error("API 错误 provider=gemini: %s", error_msg)
            status = getattr(e, "code", None)
            if status in (401, 403):
                raise ChatAuthError(error_msg, provider=DirectProvider.GEMINI.value, status_code=status) from e
            raise ChatProviderError(error_msg, provider=DirectProvider.GEMINI.value, status_code=status) from e
        return self._gemini_delta(resp)

    @staticmethod
    def _gemini_delta(resp: Any) -> StreamDelta:
        thoughts: List[str] = []
        answers: List[str] = []
        candidates = _get(resp, "candidates") or []
        if candidates:
            content = _get(candidates[0], "content")
            for part in _get(content, "parts") or []:
                text_value = _get(part, "text")
                if not text_value:
                    continue
                if _get(part, "thought", False):
                    thoughts.append(text_value)
                else:
                    answers.append(text_value)
        text = "".join(answers) or _get(resp, "text") or EMPTY_REPLY
        return StreamDelta(content=text, reasoning="\n\n".join(thoughts))

    def _gemini(self):
        if self._genai_client is None:
            self._genai_client = genai.Client(api_key=self._config.api_key)
        return self._genai_client

    def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str], stream: bool = False) -> requests.Response:
        name = self._config.provider.value
        try:
            response = self._session.post(url, json=body, headers=headers, stream=stream, timeout=self._config.request_timeout)
        except requests.RequestException as e:
            error_msg = f"{e.__class__.__name__}: {str(e)}"
            logger.error("传输错误 provider=%s: %s", name, error_msg)
            raise ChatProviderError(error_msg, provider=name) from e
        if response.status_code >= 400:
            try:
                text = response.text
            finally:
                response.close()
            logger.error("API 错误 provider=%s status=%s", name, response.status_code)
            message = f"{name} API Error: {response.status_code} - {text[:500]}"
            if response.status_code in (401, 403):
                raise ChatAuthError(message, provider=name, status_code=response.status_code)
            raise ChatProviderError(message, provider=name, status_code=response.status_code)
        return response

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


__all__ = ["DirectProvider", "DirectAPIConfig", "DirectChatClient"]
