"""流式传输：把分块到达的 `data: <json>` 事件流解析为增量。

每个请求独占一个 ``SSEDecoder``，缓冲区随请求结束丢弃。
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
import threading
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Iterator, List, Optional, TypeVar, Union

from .exceptions import ChatAbortedError
from .models import StreamDelta, StreamResult
from .utils import _get

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
REASONING_KEYS = ("reasoning_content", "reasoning")

Chunk = Union[bytes, bytearray, str]
Sink = Callable[[str], Any]
T = TypeVar("T")


class CancelToken:
    """请求级取消信号，线程安全。"""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.warning("取消回调执行失败: %s", exc)

    def add_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ChatAbortedError("请求已取消")

    async def wait(self) -> None:
        if self.cancelled:
            return
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _wake():
            loop.call_soon_threadsafe(lambda: future.done() or future.set_result(None))

        self.add_callback(_wake)
        try:
            await future
        finally:
            self.remove_callback(_wake)


async def _drain(task: "asyncio.Future[Any]") -> None:
    # 等待被取消的任务真正结束，之后才能释放它持有的资源
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def until_cancelled(awaitable: Awaitable[T], token: CancelToken) -> T:
    """等待 awaitable 完成；取消信号先到达时中止它并抛出 ChatAbortedError。"""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _drain(task)
        raise
    finally:
        waiter.cancel()
    if not task.done():
        await _drain(task)
        raise ChatAbortedError("请求已取消")
    return task.result()


def _first_text(sources: Iterable[Any], keys: Iterable[str]) -> str:
    for source in sources:
        if not isinstance(source, dict):
            continue
        for key in keys:
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return ""


def extract_delta(payload: Any) -> StreamDelta:
    """按 choices[0].delta → delta → 顶层 的顺序提取 content / reasoning。"""
    choices = _get(payload, "choices")
    choice_delta = None
    if isinstance(choices, list) and choices:
        choice_delta = _get(choices[0], "delta")
    sources = (choice_delta, _get(payload, "delta"), payload)
    return StreamDelta(
        content=_first_text(sources, ("content",)),
        reasoning=_first_text(sources, REASONING_KEYS),
    )


class SSEDecoder:
    """增量解码器：缓存未完整的行，只处理完整行。"""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: Chunk) -> List[StreamDelta]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [d for d in (self._parse_line(line) for line in lines) if d is not None]

    def flush(self) -> List[StreamDelta]:
        """流结束时处理残留的最后一行。"""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        delta = self._parse_line(tail)
        return [delta] if delta is not None else []

    @staticmethod
    def _parse_line(line: str) -> Optional[StreamDelta]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):]
        if data == DONE_SENTINEL:
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("跳过无法解析的数据帧: %.80s", data)
            return None
        delta = extract_delta(payload)
        if not delta.content and not delta.reasoning:
            return None
        return delta


def deliver(delta: StreamDelta, on_content: Optional[Sink], on_reasoning: Optional[Sink], token: Optional[CancelToken]) -> None:
    """依次调用 content / reasoning 回调，空增量不触发回调。"""
    if delta.content and on_content is not None:
        if token is not None:
            token.raise_if_cancelled()
        on_content(delta.content)
    if delta.reasoning and on_reasoning is not None:
        if token is not None:
            token.raise_if_cancelled()
        on_reasoning(delta.reasoning)


class StreamClient:
    """流式客户端：字节流 → 增量序列。"""

    def __init__(self, cancel_token: Optional[CancelToken] = None):
        self._token = cancel_token or CancelToken()

    @property
    def cancel_token(self) -> CancelToken:
        return self._token

    def iter_deltas(self, chunks: Iterable[Chunk]) -> Iterator[StreamDelta]:
        decoder = SSEDecoder()
        iterator = iter(chunks)
        try:
            for chunk in iterator:
                self._token.raise_if_cancelled()
                for delta in decoder.feed(chunk):
                    self._token.raise_if_cancelled()
                    yield delta
            for delta in decoder.flush():
                self._token.raise_if_cancelled()
                yield delta
        except ChatAbortedError:
            logger.info("流式读取已取消")
            raise
        except Exception:
            if self._token.cancelled:
                # 取消时底层连接被关闭，读取异常视为取消
                logger.info("流式读取已取消")
                raise ChatAbortedError("请求已取消") from None
            raise
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    async def aiter_deltas(self, chunks: AsyncIterable[Chunk]) -> AsyncIterator[StreamDelta]:
        decoder = SSEDecoder()
        iterator = chunks.__aiter__()
        try:
            while True:
                self._token.raise_if_cancelled()
                try:
                    chunk = await self._next_chunk(iterator)
                except StopAsyncIteration:
                    break
                for delta in decoder.feed(chunk):
                    self._token.raise_if_cancelled()
                    yield delta
            for delta in decoder.flush():
                self._token.raise_if_cancelled()
                yield delta
        except ChatAbortedError:
            logger.info("流式读取已取消")
            raise
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _next_chunk(self, iterator: AsyncIterator[Chunk]) -> Chunk:
        """等待下一块数据，取消信号先到达时立即返回取消。"""
        return await until_cancelled(iterator.__anext__(), self._token)

    def consume(self, chunks: Iterable[Chunk], on_content: Optional[Sink], on_reasoning: Optional[Sink] = None) -> StreamResult:
        result = StreamResult()
        deltas = self.iter_deltas(chunks)
        try:
            for delta in deltas:
                deliver(delta, on_content, on_reasoning, self._token)
                result.add(delta)
        finally:
            deltas.close()
        return result

    async def aconsume(
        self,
        chunks: AsyncIterable[Chunk],
        on_content: Optional[Sink],
        on_reasoning: Optional[Sink] = None,
    ) -> StreamResult:
        result = StreamResult()
        deltas = self.aiter_deltas(chunks)
        try:
            async for delta in deltas:
                deliver(delta, on_content, on_reasoning, self._token)
                result.add(delta)
        finally:
            await deltas.aclose()
        return result


__all__ = ["CancelToken", "SSEDecoder", "StreamClient", "extract_delta", "deliver", "until_cancelled"]
