# relay_sdk/llm/llm_base.py
# SPDX-License-Identifier: Apache-2.0
"""
Chat model base: error taxonomy, call options, metrics, callbacks and the
shared streaming template every vendor adapter plugs into.

Purpose
-------
A vendor-neutral surface for calling chat models that speak the canonical
`relay_sdk.schema.Message` model:

- Structured, normalized error taxonomy (machine-actionable codes)
- `generate()` for a full response, `stream()` for a chunk pipe
- Vendor extensions carried through `Message.extra`
- Metrics and callbacks that never break the data path

Streaming template
------------------
`BaseChatModel.stream()`:

    1. validates the messages and builds the vendor request
    2. opens the vendor stream; failures here are raised directly
    3. spawns one worker task owning the vendor stream:
        - each vendor event becomes zero or one chunk
          (`_convert_stream_event`)
        - chunks without content are buffered and concatenated into the
          next real chunk (or flushed at the end of the stream)
        - transport errors are translated and sent after the chunks
          already delivered
        - a closed reader stops the worker
        - the vendor stream is closed exactly once on every exit path
    4. returns the `StreamReader` side of the pipe

Backend implementers override only the underscore hooks:

    _build_request, _create, _open_stream,
    _convert_response, _convert_stream_event, _is_empty_chunk

Deliberate Non-Goals
--------------------
- No retries, hedging, routing, or fallback.
- No timeouts at this layer (the vendor client owns them).
- No tool execution or agent loops.

Those behaviors live in your orchestration layer.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Type,
    Union,
)

from relay_sdk.core.error_context import attach_context
from relay_sdk.schema.concat import concat_messages
from relay_sdk.schema.errors import SchemaError, StreamWorkerError
from relay_sdk.schema.message import Message, ToolChoice, ToolInfo
from relay_sdk.schema.stream import StreamReader, StreamWriter, spawn_stream

LOG = logging.getLogger(__name__)

# =============================================================================
# Normalized Errors (with retry hints and structured details)
# =============================================================================

class LLMAdapterError(Exception):
    """
    Base exception for all chat model adapter errors.

    Adapter implementations raise subclasses of this error so that callers
    can make consistent, machine-actionable decisions.

    Attributes:
        message:
            Human-readable description (safe for logs and clients).
        code:
            Upper-snake-case machine code.
        retry_after_ms:
            Optional client backoff hint (for 429 / overload / maintenance).
        throttle_scope:
            Scope of throttling ("tenant", "model", ...) when applicable.
        details:
            Additional JSON-safe context (never include secrets/PII).
    """
    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        throttle_scope: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retry_after_ms = retry_after_ms
        self.throttle_scope = throttle_scope
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.code:
            base += f" [code={self.code}]"
        if self.retry_after_ms is not None:
            base += f" retry_after_ms={self.retry_after_ms}"
        if self.throttle_scope:
            base += f" throttle_scope={self.throttle_scope}"
        if self.details:
            base += f" details={self.details}"
        return base


class BadRequest(LLMAdapterError):
    """
    Client error: malformed messages, invalid parameters, or unsupported options.

    Examples:
        - Empty messages
        - Invalid temperature/top_p ranges
        - Media part without payload
    """
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "BAD_REQUEST")
        super().__init__(message, **kwargs)


class AuthError(LLMAdapterError):
    """Authentication / authorization failure."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "AUTH_ERROR")
        super().__init__(message, **kwargs)


class ResourceExhausted(LLMAdapterError):
    """
    Quota, rate limit, or resource exhaustion.

    Callers should use retry_after_ms and/or throttle_scope when present.
    """
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "RESOURCE_EXHAUSTED")
        super().__init__(message, **kwargs)


class TransientNetwork(LLMAdapterError):
    """Retryable transport failure between the adapter and the vendor."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "TRANSIENT_NETWORK")
        super().__init__(message, **kwargs)


class Unavailable(LLMAdapterError):
    """Backend unavailable / overloaded / maintenance."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "UNAVAILABLE")
        super().__init__(message, **kwargs)


class NotSupported(LLMAdapterError):
    """Unsupported operation, parameter, model, or content kind."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "NOT_SUPPORTED")
        super().__init__(message, **kwargs)


class ModelOverloaded(LLMAdapterError):
    """
    Specific model is overloaded.

    Allows routers to distinguish model-level overload from global failures.
    """
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "MODEL_OVERLOADED")
        super().__init__(message, **kwargs)


class DeadlineExceeded(LLMAdapterError):
    """The vendor client timed out."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "DEADLINE_EXCEEDED")
        super().__init__(message, **kwargs)


class ProtocolViolation(LLMAdapterError):
    """
    The vendor emitted an event or content block this adapter does not
    understand. The stream is aborted: skipping unknown content would
    produce a semantically wrong message.
    """
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "PROTOCOL_VIOLATION")
        super().__init__(message, **kwargs)


# =============================================================================
# Vendor error translation (shared status buckets)
# =============================================================================

def extract_retry_after_ms(err: Any) -> Optional[int]:
    """
    Extract a Retry-After header from a vendor error's HTTP response.

    Handles both:
    - Retry-After: 60 (integer seconds)
    - Retry-After: Wed, 21 Oct 2015 07:28:00 GMT (HTTP date format)
    """
    resp = getattr(err, "response", None)
    headers = getattr(resp, "headers", None) if resp is not None else None
    if not headers:
        return None

    val = None
    for key in ("retry-after", "Retry-After"):
        try:
            val = headers.get(key)
        except AttributeError:
            return None
        if val is not None:
            break
    if val is None:
        return None

    val_str = str(val).strip()
    try:
        return max(0, int(val_str)) * 1000
    except ValueError:
        pass
    try:
        retry_datetime = parsedate_to_datetime(val_str)
    except (TypeError, ValueError):
        return None
    delay_seconds = int(retry_datetime.timestamp() - time.time())
    return max(0, delay_seconds) * 1000


def _status_of(err: Any) -> int:
    for attr in ("status_code", "status"):
        value = getattr(err, attr, None)
        if isinstance(value, int):
            return value
    code = getattr(err, "code", None)
    if isinstance(code, int) and 100 <= code <= 599:
        return code
    resp = getattr(err, "response", None)
    value = getattr(resp, "status_code", None)
    return value if isinstance(value, int) else 0


def error_from_status(
    status: int,
    message: str,
    *,
    vendor: str,
    retry_after_ms: Optional[int] = None,
) -> LLMAdapterError:
    """Map an HTTP status code onto the error taxonomy."""
    details = {"vendor": vendor, "status": status}
    if status in (400, 413, 422):
        return BadRequest(message or f"{vendor} request is invalid", details=details)
    if status in (401, 403):
        return AuthError(message or f"{vendor} authentication/authorization error", details=details)
    if status == 404:
        return NotSupported(message or f"requested {vendor} resource is not supported", details=details)
    if status == 408:
        return DeadlineExceeded(message or f"{vendor} request timed out", details=details)
    if status == 429:
        return ResourceExhausted(
            message or f"{vendor} rate limit exceeded",
            retry_after_ms=retry_after_ms,
            throttle_scope="tenant",
            details=details,
        )
    if status == 529:
        return ModelOverloaded(
            message or f"{vendor} model is overloaded",
            retry_after_ms=retry_after_ms,
            throttle_scope="model",
            details=details,
        )
    if 500 <= status <= 599:
        return Unavailable(
            message or f"{vendor} service is temporarily unavailable",
            retry_after_ms=retry_after_ms,
            details=details,
        )
    return Unavailable(message or f"{vendor} error (status={status})", details=details)


def translate_vendor_error(
    err: BaseException,
    *,
    vendor: str,
    timeout_errors: Tuple[Type[BaseException], ...] = (),
    connection_errors: Tuple[Type[BaseException], ...] = (),
) -> LLMAdapterError:
    """
    Map a vendor client error into the taxonomy.

    Timeout types are checked before connection types: several SDKs derive
    their timeout error from their connection error.
    """
    if isinstance(err, LLMAdapterError):
        return err
    if isinstance(err, TimeoutError) or (timeout_errors and isinstance(err, timeout_errors)):
        return DeadlineExceeded(str(err) or f"{vendor} request timed out", details={"vendor": vendor})
    if isinstance(err, ConnectionError) or (connection_errors and isinstance(err, connection_errors)):
        return TransientNetwork(str(err) or f"{vendor} connection error", details={"vendor": vendor})

    status = _status_of(err)
    if status:
        return error_from_status(
            status,
            str(err),
            vendor=vendor,
            retry_after_ms=extract_retry_after_ms(err),
        )
    return Unavailable(str(err) or f"{vendor} error", details={"vendor": vendor})


# =============================================================================
# Metrics Interface (low-cardinality)
# =============================================================================

class MetricsSink(Protocol):
    """
    Metrics collection protocol.

    Implementations MUST:
        - Avoid PII.
        - Avoid high-cardinality labels.
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class NoopMetrics:
    """No-op metrics sink for tests or minimal deployments."""
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...


# =============================================================================
# Callbacks
# =============================================================================

class CallbackHandler(Protocol):
    """
    Observer notified around every `generate()` / `stream()` call.

    For streams, `on_end` receives the concatenated message once the
    stream has been fully drained. Handler failures are logged and
    swallowed.
    """
    def on_start(self, *, vendor: str, model: Optional[str], messages: Sequence[Message]) -> None: ...

    def on_end(self, *, vendor: str, model: Optional[str], message: Message, ms: float) -> None: ...

    def on_error(self, *, vendor: str, model: Optional[str], error: BaseException) -> None: ...


class LoggingCallbackHandler:
    """Callback handler writing one log line per call outcome."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
        self._logger = logger or LOG
        self._level = level

    def on_start(self, *, vendor: str, model: Optional[str], messages: Sequence[Message]) -> None:
        self._logger.log(self._level, "%s chat start model=%s messages=%d", vendor, model, len(messages))

    def on_end(self, *, vendor: str, model: Optional[str], message: Message, ms: float) -> None:
        usage = message.response_meta.usage if message.response_meta else None
        self._logger.log(
            self._level,
            "%s chat end model=%s ms=%.1f tool_calls=%d total_tokens=%s",
            vendor,
            model,
            ms,
            len(message.tool_calls),
            usage.total_tokens if usage else None,
        )

    def on_error(self, *, vendor: str, model: Optional[str], error: BaseException) -> None:
        self._logger.warning("%s chat error model=%s: %s", vendor, model, error)


# =============================================================================
# Call options
# =============================================================================

@dataclass(frozen=True)
class CallOptions:
    """
    Per-call options, merged over the model's defaults.

    Attributes:
        model:
            Vendor model id.
        max_tokens / temperature / top_p / stop:
            Common sampling options; None means "vendor default".
        tools:
            Tool definitions; overrides tools bound with `bind_tools`.
        tool_choice:
            How the model may use the tools.
        extra:
            Vendor-specific options (e.g. "thinking", "reasoning",
            "response_modalities"). Documented per adapter.
    """
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop: Optional[Tuple[str, ...]] = None
    tools: Optional[Tuple[ToolInfo, ...]] = None
    tool_choice: Optional[ToolChoice] = None
    extra: Mapping[str, Any] = None

    def __post_init__(self) -> None:
        if self.extra is None:
            object.__setattr__(self, "extra", {})
        if self.stop is not None and not isinstance(self.stop, tuple):
            object.__setattr__(self, "stop", tuple(self.stop))
        if self.tools is not None and not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))

    def merge(self, other: Optional["CallOptions"]) -> "CallOptions":
        """Fields set on `other` win; `extra` maps are merged key-wise."""
        if other is None:
            return self
        updates: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            if f.name == "extra":
                continue
            value = getattr(other, f.name)
            if value is not None:
                updates[f.name] = value
        updates["extra"] = {**self.extra, **other.extra}
        return dataclasses.replace(self, **updates)

    def vendor_option(self, key: str, default: Any = None) -> Any:
        return self.extra.get(key, default)

    def validate(self) -> None:
        if self.temperature is not None and not (0.0 <= self.temperature <= 2.0):
            raise BadRequest("temperature must be within [0.0, 2.0]")
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            raise BadRequest("top_p must be within (0.0, 1.0]")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise BadRequest("max_tokens must be positive")


# =============================================================================
# Streaming helpers
# =============================================================================

class StreamContext:
    """
    Per-stream state owned by the worker, plus the vendor request that
    opened the stream.

    `next_tool_index(is_start)` increments once per genuinely new tool call;
    continuation fragments reuse the current index, and a continuation seen
    before any start is assigned index 0.
    """

    def __init__(self, request: Optional[Mapping[str, Any]] = None) -> None:
        self.request: Mapping[str, Any] = request or {}
        self.tool_index: Optional[int] = None
        self.state: Dict[str, Any] = {}

    def next_tool_index(self, is_start: bool) -> int:
        if is_start:
            self.tool_index = 0 if self.tool_index is None else self.tool_index + 1
        elif self.tool_index is None:
            self.tool_index = 0
        return self.tool_index


CloseFunc = Callable[[], Union[None, Awaitable[None]]]


class EventStream:
    """
    A vendor event iterator plus the callable that releases it.

    `aclose()` is idempotent: the close callable runs at most once.
    """

    def __init__(self, events: Any, close: Optional[CloseFunc] = None) -> None:
        self._events = events
        self._close = close
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._events.__aiter__()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is None:
            return
        result = self._close()
        if hasattr(result, "__await__"):
            await result


def close_func_of(obj: Any) -> Optional[CloseFunc]:
    """Best close callable exposed by a vendor stream object."""
    for name in ("aclose", "close"):
        fn = getattr(obj, name, None)
        if callable(fn):
            return fn
    return None


# =============================================================================
# Base chat model
# =============================================================================

class BaseChatModel:
    """
    Base implementation of the chat model contract.

    This class:
        - Validates messages and call options.
        - Merges per-call options over instance defaults.
        - Translates vendor errors into the taxonomy.
        - Runs the streaming worker template.
        - Emits metrics and callbacks (both best-effort).

    Backend implementers override only the underscore hooks.
    """

    _component = "llm"
    _vendor = "base"

    def __init__(
        self,
        *,
        model: str,
        metrics: Optional[MetricsSink] = None,
        callbacks: Optional[Sequence[CallbackHandler]] = None,
        default_options: Optional[CallOptions] = None,
        tag_model_in_metrics: bool = True,
        stream_capacity: int = 1,
    ) -> None:
        if not model or not isinstance(model, str):
            raise ValueError("model must be a non-empty string")
        if stream_capacity < 1:
            raise ValueError("stream_capacity must be >= 1")
        self._model = model
        self._metrics: MetricsSink = metrics or NoopMetrics()
        self._callbacks: List[CallbackHandler] = list(callbacks or [])
        self._default_options = default_options or CallOptions()
        self._default_options.validate()
        self._tag_model_in_metrics = bool(tag_model_in_metrics)
        self._stream_capacity = int(stream_capacity)
        self._tools: List[ToolInfo] = []

    @property
    def model(self) -> str:
        return self._model

    # --- async context management --------------------------------------------

    async def __aenter__(self) -> "BaseChatModel":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Release vendor client resources. Default is a no-op."""
        return None

    # --- tools ----------------------------------------------------------------

    def bind_tools(self, tools: Sequence[ToolInfo]) -> None:
        """Bind tools used by every subsequent call of this instance."""
        self._tools = self._checked_tools(tools)

    def with_tools(self, tools: Sequence[ToolInfo]) -> "BaseChatModel":
        """Shallow copy of this model with `tools` bound; self is unchanged."""
        clone = copy.copy(self)
        clone._tools = self._checked_tools(tools)
        return clone

    @staticmethod
    def _checked_tools(tools: Sequence[ToolInfo]) -> List[ToolInfo]:
        if not tools:
            raise BadRequest("tools must be a non-empty list")
        names = set()
        for tool in tools:
            if not isinstance(tool, ToolInfo) or not tool.name:
                raise BadRequest("every tool must be a ToolInfo with a name")
            if tool.name in names:
                raise BadRequest(f"duplicate tool name: {tool.name}")
            names.add(tool.name)
        return list(tools)

    # --- internal helpers -----------------------------------------------------

    @staticmethod
    def _validate_messages(messages: Sequence[Message]) -> None:
        if not messages or not all(isinstance(m, Message) for m in messages):
            raise BadRequest("messages must be a non-empty list of Message")

    def _resolve_options(self, options: Optional[CallOptions]) -> CallOptions:
        opts = self._default_options.merge(options)
        opts.validate()
        updates: Dict[str, Any] = {}
        if opts.model is None:
            updates["model"] = self._model
        if opts.tools is None and self._tools:
            updates["tools"] = tuple(self._tools)
        return dataclasses.replace(opts, **updates) if updates else opts

    def _record(self, op: str, t0: float, ok: bool, *, code: str = "OK", model: Optional[str] = None) -> None:
        """Emit a timing metric. Failures in metrics emission are swallowed."""
        try:
            extra: Dict[str, Any] = {"vendor": self._vendor}
            if self._tag_model_in_metrics and model:
                extra["model"] = model
            self._metrics.observe(
                component=self._component,
                op=op,
                ms=(time.monotonic() - t0) * 1000.0,
                ok=ok,
                code=code,
                extra=extra,
            )
        except Exception:  # noqa: BLE001
            LOG.warning("metrics sink failed for %s.%s", self._vendor, op, exc_info=True)

    def _notify(self, event: str, **kwargs: Any) -> None:
        for handler in self._callbacks:
            fn = getattr(handler, event, None)
            if fn is None:
                continue
            try:
                fn(vendor=self._vendor, **kwargs)
            except Exception:  # noqa: BLE001
                LOG.warning("callback %s.%s failed", type(handler).__name__, event, exc_info=True)

    def _translate_error(self, err: BaseException) -> LLMAdapterError:
        """Vendor-specific mapping; adapters pass their SDK error classes."""
        return translate_vendor_error(err, vendor=self._vendor)

    def _fail(self, err: BaseException, *, op: str, stage: str, model: Optional[str]) -> LLMAdapterError:
        """Translate, annotate and return an error raised by the vendor client."""
        translated = self._translate_error(err)
        attach_context(translated, framework=self._vendor, operation=op, error_stage=stage, model=model)
        return translated

    @staticmethod
    def _code_of(err: BaseException) -> str:
        return getattr(err, "code", None) or type(err).__name__

    # --- hooks ----------------------------------------------------------------

    def _build_request(self, messages: Sequence[Message], options: CallOptions, *, stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    async def _create(self, request: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def _open_stream(self, request: Dict[str, Any]) -> EventStream:
        raise NotImplementedError

    def _convert_response(self, response: Any) -> Message:
        raise NotImplementedError

    def _convert_stream_event(self, event: Any, stream_ctx: StreamContext) -> Optional[Message]:
        raise NotImplementedError

    def _is_empty_chunk(self, chunk: Message) -> bool:
        return chunk.is_empty()

    # --- public API -----------------------------------------------------------

    async def generate(self, messages: Sequence[Message], options: Optional[CallOptions] = None) -> Message:
        """Run one non-streaming call and return the assistant message."""
        self._validate_messages(messages)
        opts = self._resolve_options(options)
        request = self._build_request(messages, opts, stream=False)

        t0 = time.monotonic()
        self._notify("on_start", model=opts.model, messages=messages)
        try:
            try:
                response = await self._create(request)
            except Exception as exc:  # noqa: BLE001
                raise self._fail(exc, op="generate", stage="api_call", model=opts.model) from exc
            message = self._convert_response(response)
        except (LLMAdapterError, SchemaError) as err:
            self._record("generate", t0, False, code=self._code_of(err), model=opts.model)
            self._notify("on_error", model=opts.model, error=err)
            raise

        self._record("generate", t0, True, model=opts.model)
        self._notify("on_end", model=opts.model, message=message, ms=(time.monotonic() - t0) * 1000.0)
        return message

    async def stream(self, messages: Sequence[Message], options: Optional[CallOptions] = None) -> StreamReader:
        """
        Start a streaming call and return the chunk pipe.

        Errors raised while opening the vendor stream propagate from this
        call. Later errors arrive as the terminal item of the returned
        reader, after every chunk already produced.
        """
        self._validate_messages(messages)
        opts = self._resolve_options(options)
        request = self._build_request(messages, opts, stream=True)

        t0 = time.monotonic()
        self._notify("on_start", model=opts.model, messages=messages)
        try:
            events = await self._open_stream(request)
        except Exception as exc:  # noqa: BLE001
            err = exc if isinstance(exc, LLMAdapterError) else self._fail(
                exc, op="stream", stage="open_stream", model=opts.model
            )
            self._record("stream", t0, False, code=self._code_of(err), model=opts.model)
            self._notify("on_error", model=opts.model, error=err)
            if err is exc:
                raise
            raise err from exc

        LOG.debug("%s stream opened model=%s", self._vendor, opts.model)

        async def _produce(writer: StreamWriter) -> None:
            await self._pump(events, writer, model=opts.model, t0=t0, request=request)

        return spawn_stream(_produce, capacity=self._stream_capacity, name=f"{self._vendor}.stream")

    async def _pump(
        self,
        events: EventStream,
        writer: StreamWriter,
        *,
        model: Optional[str],
        t0: float,
        request: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Worker body: vendor events in, chunks out."""
        stream_ctx = StreamContext(request)
        pending: List[Message] = []
        delivered: List[Message] = []
        error: Optional[BaseException] = None
        cancelled = False

        async def _emit(chunk: Message) -> bool:
            delivered.append(chunk)
            return await writer.send(chunk)

        try:
            iterator = events.__aiter__()
            while True:
                try:
                    event = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except LLMAdapterError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    raise self._fail(exc, op="stream", stage="iterate", model=model) from exc

                chunk = self._convert_stream_event(event, stream_ctx)
                if chunk is None:
                    continue
                if self._is_empty_chunk(chunk):
                    pending.append(chunk)
                    continue
                if pending:
                    chunk = concat_messages(pending + [chunk])
                    pending = []
                if await _emit(chunk):
                    cancelled = True
                    return

            if pending:
                if await _emit(concat_messages(pending)):
                    cancelled = True
                    return

        except asyncio.CancelledError:
            cancelled = True
            raise
        except (LLMAdapterError, SchemaError) as exc:
            error = exc
            attach_context(exc, framework=self._vendor, operation="stream", model=model)
            await writer.send(error=exc)
        except Exception as exc:
            error = StreamWorkerError(exc)
            raise
        finally:
            try:
                await events.aclose()
            except Exception:  # noqa: BLE001
                LOG.warning("%s stream close failed", self._vendor, exc_info=True)
            self._finish_stream(delivered, error=error, cancelled=cancelled, model=model, t0=t0)

    def _finish_stream(
        self,
        delivered: List[Message],
        *,
        error: Optional[BaseException],
        cancelled: bool,
        model: Optional[str],
        t0: float,
    ) -> None:
        if error is not None:
            self._record("stream", t0, False, code=self._code_of(error), model=model)
            self._notify("on_error", model=model, error=error)
            return
        if cancelled:
            self._record("stream", t0, False, code="CANCELLED", model=model)
            return

        self._record("stream", t0, True, model=model)
        if not self._callbacks or not delivered:
            return
        try:
            message = concat_messages(delivered)
        except SchemaError:
            LOG.warning("%s stream output could not be concatenated for callbacks", self._vendor, exc_info=True)
            return
        self._notify("on_end", model=model, message=message, ms=(time.monotonic() - t0) * 1000.0)


__all__ = [
    "LLMAdapterError",
    "BadRequest",
    "AuthError",
    "ResourceExhausted",
    "TransientNetwork",
    "Unavailable",
    "NotSupported",
    "ModelOverloaded",
    "DeadlineExceeded",
    "ProtocolViolation",
    "StreamWorkerError",
    "extract_retry_after_ms",
    "error_from_status",
    "translate_vendor_error",
    "MetricsSink",
    "NoopMetrics",
    "CallbackHandler",
    "LoggingCallbackHandler",
    "CallOptions",
    "StreamContext",
    "EventStream",
    "close_func_of",
    "BaseChatModel",
]
