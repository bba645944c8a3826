"""
Channel Adapters — base infrastructure shared by every channel.

Provides:
- ChannelError / ChannelSendError: structured error hierarchy
- CircuitBreaker: failure-counting breaker with half-open probe
- InputSanitizer: strips control characters from inbound text
- ChannelAdapter: abstract base wrapping every send with breaker + retry,
  and normalising inbound payloads into InboundEvents
- ChannelRegistry: adapter lookup by channel type
"""
from __future__ import annotations

import abc
import time
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential,
)

from core.errors import FlowEngineError
from models.schemas import ChannelType, Conversation, EventKind, InboundEvent, OutboundAction

logger = structlog.get_logger()

InboundHandler = Callable[[InboundEvent], Awaitable[Any]]


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(FlowEngineError):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ChannelSendError(ChannelError):
    """Outbound action could not be delivered after all retries."""

    def __init__(self, message: str, channel: str = "", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, channel, retryable=False)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ChannelError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError))


def raise_for_provider(response: httpx.Response, channel: str) -> None:
    """Map provider HTTP status to ChannelError. 429 and 5xx are retryable."""
    if response.status_code < 400:
        return
    retryable = response.status_code == 429 or response.status_code >= 500
    raise ChannelError(
        f"{channel} API error {response.status_code}: {response.text[:200]}",
        channel, retryable=retryable,
    )


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        return content[: self.max_length].strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER: Abstract Base
# ══════════════════════════════════════════════════════════════

def render_text(action: OutboundAction) -> str:
    """Plain-text rendering for channels without native menus."""
    lines = [action.text] if action.text else []
    for opt in action.options:
        lines.append(f"{opt.value}. {opt.text}" if opt.value != opt.text else opt.text)
    return "\n".join(lines)


class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _do_send and, for provider webhooks, parse_webhook.
    The base class wraps every send with the circuit breaker and an
    exponential-backoff retry; exhausted retries raise ChannelSendError.
    send() does not wait for delivery receipts.
    """

    channel_type: ChannelType
    voice_capable: bool = False

    def __init__(self, max_attempts: int = 3, backoff_base: float = 0.5, backoff_max: float = 8.0):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._breaker = CircuitBreaker()
        self._sanitizer = InputSanitizer()
        self._inbound_handler: Optional[InboundHandler] = None

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        ...

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config or {})
        self._initialized = True

    # ── Outbound ──────────────────────────────────────────────

    async def send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        channel = self.channel_type.value
        if self._breaker.is_open:
            raise ChannelSendError(f"Circuit breaker open for {channel}", channel)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            reraise=False,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    result = await self._do_send(conversation, action)
        except RetryError as e:
            cause = e.last_attempt.exception()
            self._breaker.record_failure()
            logger.error("channel_send_exhausted", channel=channel,
                         conversation_id=conversation.id, attempts=attempts, error=str(cause))
            raise ChannelSendError(str(cause), channel, attempts) from cause
        except Exception as e:
            self._breaker.record_failure()
            logger.error("channel_send_failed", channel=channel,
                         conversation_id=conversation.id, attempts=attempts, error=str(e))
            raise ChannelSendError(str(e), channel, attempts) from e

        self._breaker.record_success()
        result = dict(result or {})
        result.setdefault("status", "sent")
        result["attempts"] = attempts
        return result

    # ── Inbound ───────────────────────────────────────────────

    def set_inbound_handler(self, handler: Optional[InboundHandler]) -> None:
        self._inbound_handler = handler

    def parse_inbound(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        """Normalise one inbound payload. The default accepts the engine's own shape."""
        if not payload:
            return None
        kind = payload.get("kind") or payload.get("type") or EventKind.MESSAGE.value
        try:
            kind = EventKind(kind)
        except ValueError:
            kind = EventKind.MESSAGE
        fields: dict[str, Any] = {
            "channel_type": self.channel_type,
            "channel_id": str(payload.get("channelId") or payload.get("channel_id") or ""),
            "external_user_id": str(payload.get("userId") or payload.get("external_user_id") or ""),
            "kind": kind,
            "text": str(payload.get("text") or payload.get("message") or ""),
            "media_url": payload.get("mediaUrl") or payload.get("media_url"),
            "trigger_type": payload.get("triggerType") or payload.get("trigger_type") or "inbound_message",
            "attributes": payload.get("attributes") or {},
            "payload": payload,
        }
        event_id = payload.get("eventId") or payload.get("event_id")
        if event_id:
            fields["event_id"] = str(event_id)
        return InboundEvent(**fields)

    def parse_webhook(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Provider webhooks may batch several events; default is one."""
        event = self.parse_inbound(payload)
        return [event] if event else []

    async def _dispatch(self, event: InboundEvent) -> Any:
        event.text = self._sanitizer.sanitize(event.text)
        if self._inbound_handler is None:
            logger.warning("inbound_without_handler", channel=self.channel_type.value,
                           event_id=event.event_id)
            return None
        return await self._inbound_handler(event)

    async def on_inbound_event(self, channel_id: str, external_user_id: str,
                               payload: dict[str, Any]) -> Optional[InboundEvent]:
        event = self.parse_inbound(payload)
        if event is None:
            return None
        if channel_id:
            event.channel_id = str(channel_id)
        if external_user_id:
            event.external_user_id = str(external_user_id)
        await self._dispatch(event)
        return event

    async def handle_webhook(self, payload: dict[str, Any]) -> list[InboundEvent]:
        events = self.parse_webhook(payload)
        for event in events:
            await self._dispatch(event)
        return events

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        adapter = self._adapters.get(channel_type)
        if adapter is None and channel_type.voice_capable:
            adapter = self._adapters.get(ChannelType.VOICE) or self._adapters.get(ChannelType.ASTERISK)
        return adapter

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    def set_inbound_handler(self, handler: InboundHandler):
        for adapter in self._adapters.values():
            adapter.set_inbound_handler(handler)

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            try:
                ch_cfg = configs.get(ch.value, {})
                # ChannelConfig dataclass → dict so adapters can call .get()
                if hasattr(ch_cfg, "credentials"):
                    ch_cfg = ch_cfg.credentials
                await adapter.initialize(ch_cfg)
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, a in self._adapters.items():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
