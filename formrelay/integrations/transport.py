"""
Delivery Transport for FormRelay.

At-least-once HTTP delivery of one request to one destination, with
signing, a per-attempt timeout and bounded retry.

Each delivery is an explicit state machine:

    PENDING -> ATTEMPTING -> SUCCEEDED
                    |
                    +-> RETRY_WAIT -> ATTEMPTING ...
                    |
                    +-> FAILED

Cancelling the surrounding task moves the delivery to CANCELLED from
any non-final state; a cancelled delivery is never retried and the
CancelledError propagates to the caller.

Usage:
    async with DeliveryTransport(attempt_timeout=10.0) as transport:
        delivery = await transport.send_event(
            payload,
            url="https://example.com/hook",
            secret="s3cr3t",
        )
        result = delivery.to_result(config.id)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

import httpx

from formrelay import __version__
from formrelay.events import EventPayload
from formrelay.integrations.base import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryResult,
    IntegrationError,
    RateLimitError,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from formrelay.integrations.retry import DEFAULT_DELIVERY_POLICY, RetryPolicy
from formrelay.integrations.signing import sign

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = f"FormRelay/{__version__}"

SIGNATURE_HEADER = "X-Signature"
DELIVERY_ID_HEADER = "X-Delivery-Id"
EVENT_HEADER = "X-Event-Kind"

# Headers a config's custom headers may never override
RESERVED_HEADERS = frozenset(
    h.lower()
    for h in ("Content-Type", "User-Agent", SIGNATURE_HEADER, DELIVERY_ID_HEADER, EVENT_HEADER)
)


class DeliveryState(str, Enum):
    """States of a single delivery."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRY_WAIT = "retry_wait"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (DeliveryState.SUCCEEDED, DeliveryState.FAILED, DeliveryState.CANCELLED)


_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING: frozenset({DeliveryState.ATTEMPTING, DeliveryState.CANCELLED}),
    DeliveryState.ATTEMPTING: frozenset(
        {
            DeliveryState.SUCCEEDED,
            DeliveryState.RETRY_WAIT,
            DeliveryState.FAILED,
            DeliveryState.CANCELLED,
        }
    ),
    DeliveryState.RETRY_WAIT: frozenset({DeliveryState.ATTEMPTING, DeliveryState.CANCELLED}),
    DeliveryState.SUCCEEDED: frozenset(),
    DeliveryState.FAILED: frozenset(),
    DeliveryState.CANCELLED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class OutboundRequest:
    """A fully built HTTP request, ready to be attempted repeatedly."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    content: bytes | None = None
    params: Mapping[str, Any] | None = None

    @classmethod
    def json(
        cls,
        method: str,
        url: str,
        body: Any,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> OutboundRequest:
        """Build a request with a JSON body."""
        return cls(
            method=method,
            url=url,
            headers={"Content-Type": "application/json", **(headers or {})},
            content=json.dumps(body, ensure_ascii=False, default=str).encode("utf-8"),
            params=params,
        )


class Delivery:
    """
    One delivery of one request, tracked through its states.

    Holds the attempt history, the final response (on success) and the
    last error (on failure).
    """

    def __init__(
        self,
        request: OutboundRequest,
        policy: RetryPolicy,
        integration: str,
        delivery_id: str | None = None,
    ):
        self.request = request
        self.policy = policy
        self.integration = integration
        self.delivery_id = delivery_id or uuid4().hex
        self.state = DeliveryState.PENDING
        self.attempts: list[DeliveryAttempt] = []
        self.response: httpx.Response | None = None
        self.last_error: IntegrationError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is DeliveryState.SUCCEEDED

    def transition(self, new_state: DeliveryState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid delivery transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def record(
        self,
        outcome: AttemptOutcome,
        *,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        self.attempts.append(
            DeliveryAttempt(
                number=len(self.attempts) + 1,
                outcome=outcome,
                status_code=status_code,
                error=error,
            )
        )

    def to_result(
        self,
        config_id: str = "",
        *,
        external_id: str | None = None,
        message: str | None = None,
    ) -> DeliveryResult:
        """Convert the finished delivery into a DeliveryResult."""
        attempts = tuple(self.attempts)
        if self.succeeded:
            status = self.response.status_code if self.response is not None else None
            return DeliveryResult.ok(
                config_id,
                external_id=external_id if external_id is not None else correlation_id(self.response),
                status_code=status,
                message=message or f"Delivered (status: {status})",
                attempts=attempts,
            )
        error = self.last_error
        return DeliveryResult.fail(
            str(error) if error else f"Delivery {self.state.value}",
            config_id,
            retryable=error.retryable if error else False,
            status_code=error.status_code if error else None,
            attempts=attempts,
        )


def response_json(response: httpx.Response | None) -> dict[str, Any]:
    """
    Parse a response body as a JSON object.

    Returns an empty dict for a missing response, a body that is not
    JSON, or JSON that is not an object.
    """
    if response is None:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def correlation_id(response: httpx.Response | None) -> str | None:
    """Return the destination's id for a delivery, if it supplied one."""
    if response is None:
        return None
    request_id = response.headers.get("X-Request-Id")
    if request_id:
        return request_id
    if "json" in response.headers.get("Content-Type", ""):
        body_id = response_json(response).get("id")
        if body_id is not None:
            return str(body_id)
    return None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth honouring; fall back to backoff
        return None


class DeliveryTransport:
    """
    Signing, retrying HTTP delivery shared by all providers.

    The transport owns (or is given) one httpx.AsyncClient. Every attempt
    runs under `attempt_timeout`; between attempts the retry policy
    decides whether and how long to wait.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        attempt_timeout: float = 10.0,
        policy: RetryPolicy = DEFAULT_DELIVERY_POLICY,
        user_agent: str = DEFAULT_USER_AGENT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the transport.

        Args:
            client: Shared HTTP client (created lazily when omitted)
            attempt_timeout: Seconds allowed per attempt
            policy: Default retry policy
            user_agent: User-Agent sent with every request
            sleep: Awaitable used to wait between attempts
        """
        self._client = client
        self._owns_client = client is None
        self.attempt_timeout = attempt_timeout
        self.policy = policy
        self.user_agent = user_agent
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.attempt_timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DeliveryTransport:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Envelope and headers
    # =========================================================================

    @staticmethod
    def build_envelope(payload: EventPayload) -> bytes:
        """
        Serialise a payload into the canonical JSON envelope.

        {event, timestamp, form: {id, name}, data, metadata}
        """
        envelope = {
            "event": payload.event.value,
            "timestamp": payload.timestamp.isoformat(),
            "form": {"id": payload.form_id, "name": payload.form_name},
            "data": payload.data,
            "metadata": payload.metadata.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        return json.dumps(
            envelope,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")

    def build_headers(
        self,
        payload: EventPayload,
        body: bytes,
        *,
        delivery_id: str,
        secret: str | None = None,
        custom_headers: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Merge custom headers with the reserved delivery headers."""
        headers = {
            str(k): str(v)
            for k, v in (custom_headers or {}).items()
            if str(k).lower() not in RESERVED_HEADERS
        }
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": self.user_agent,
                DELIVERY_ID_HEADER: delivery_id,
                EVENT_HEADER: payload.event.value,
            }
        )
        if secret:
            headers[SIGNATURE_HEADER] = sign(secret, body)
        else:
            logger.debug(f"No secret configured, delivery {delivery_id} is unsigned")
        return headers

    # =========================================================================
    # Delivery
    # =========================================================================

    async def send_event(
        self,
        payload: EventPayload,
        *,
        url: str,
        method: str = "POST",
        secret: str | None = None,
        headers: Mapping[str, str] | None = None,
        policy: RetryPolicy | None = None,
        integration: str = "webhook",
    ) -> Delivery:
        """Sign and deliver one event envelope to url."""
        body = self.build_envelope(payload)
        delivery_id = uuid4().hex
        request = OutboundRequest(
            method=method.upper(),
            url=url,
            headers=self.build_headers(
                payload,
                body,
                delivery_id=delivery_id,
                secret=secret,
                custom_headers=headers,
            ),
            content=body,
        )
        return await self.deliver(
            request,
            policy=policy,
            integration=integration,
            delivery_id=delivery_id,
        )

    async def deliver(
        self,
        request: OutboundRequest,
        *,
        policy: RetryPolicy | None = None,
        integration: str = "http",
        delivery_id: str | None = None,
    ) -> Delivery:
        """
        Run a request through the delivery state machine.

        Returns the finished Delivery (SUCCEEDED or FAILED).

        Raises:
            asyncio.CancelledError: If the surrounding task is cancelled
        """
        policy = policy or self.policy
        delivery = Delivery(request, policy, integration, delivery_id)

        while True:
            delivery.transition(DeliveryState.ATTEMPTING)
            attempt = len(delivery.attempts) + 1

            try:
                response = await asyncio.wait_for(
                    self._attempt(request, integration),
                    timeout=self.attempt_timeout,
                )
            except asyncio.CancelledError:
                delivery.record(AttemptOutcome.CANCELLED, error="Delivery cancelled")
                delivery.transition(DeliveryState.CANCELLED)
                logger.info(f"[{integration}] Delivery {delivery.delivery_id} cancelled")
                raise
            except TimeoutError:
                error: IntegrationError = TransientDeliveryError(
                    f"Attempt timed out after {self.attempt_timeout:.1f}s",
                    integration,
                )
                delivery.record(AttemptOutcome.TIMEOUT, error=str(error))
            except IntegrationError as e:
                error = e
                delivery.record(
                    AttemptOutcome.RETRYABLE if e.retryable else AttemptOutcome.TERMINAL,
                    status_code=e.status_code,
                    error=str(e),
                )
            else:
                delivery.response = response
                delivery.record(AttemptOutcome.SUCCESS, status_code=response.status_code)
                delivery.transition(DeliveryState.SUCCEEDED)
                if attempt > 1:
                    logger.info(
                        f"[{integration}] Delivery {delivery.delivery_id} succeeded "
                        f"on attempt {attempt}/{policy.max_attempts}"
                    )
                return delivery

            delivery.last_error = error

            if not policy.should_retry(attempt, error.retryable):
                delivery.transition(DeliveryState.FAILED)
                if error.retryable:
                    logger.warning(
                        f"[{integration}] Max attempts ({policy.max_attempts}) reached for "
                        f"{request.method} {request.url}: {error}"
                    )
                else:
                    logger.warning(f"[{integration}] Terminal failure for {request.method} {request.url}: {error}")
                return delivery

            delay = policy.get_delay(attempt, getattr(error, "retry_after", None))
            delivery.transition(DeliveryState.RETRY_WAIT)
            logger.info(
                f"[{integration}] Retry {attempt}/{policy.max_attempts - 1} "
                f"for {request.method} {request.url} after {delay:.2f}s"
            )
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                delivery.transition(DeliveryState.CANCELLED)
                logger.info(f"[{integration}] Delivery {delivery.delivery_id} cancelled while waiting")
                raise

    async def _attempt(self, request: OutboundRequest, integration: str) -> httpx.Response:
        """
        Execute a single HTTP attempt.

        Raises:
            TransientDeliveryError: Network failure or retryable status
            TerminalDeliveryError: Unusable URL or 4xx status
        """
        client = await self._get_client()
        headers = dict(request.headers)
        headers.setdefault("User-Agent", self.user_agent)

        try:
            response = await client.request(
                method=request.method,
                url=request.url,
                headers=headers,
                content=request.content,
                params=request.params,
            )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Request timeout: {e}", integration) from e
        except httpx.UnsupportedProtocol as e:
            raise TerminalDeliveryError(f"Unsupported URL: {e}", integration) from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Network error: {e}", integration) from e
        except httpx.InvalidURL as e:
            raise TerminalDeliveryError(f"Invalid URL: {e}", integration) from e

        self._check_response(response, integration)
        return response

    @staticmethod
    def _check_response(response: httpx.Response, integration: str) -> None:
        """
        Classify a non-2xx response.

        Raises:
            RateLimitError: For 429 (retryable, honours Retry-After)
            TerminalDeliveryError: For other 4xx
            TransientDeliveryError: For everything else that is not 2xx
        """
        if response.is_success:
            return

        status = response.status_code
        body = response.text[:200] if response.text else ""
        message = f"HTTP {status}: {body}" if body else f"HTTP {status}"

        if status == 429:
            raise RateLimitError(
                message,
                integration,
                status_code=status,
                response_body=body,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        if 400 <= status < 500:
            raise TerminalDeliveryError(message, integration, status_code=status, response_body=body)

        raise TransientDeliveryError(message, integration, status_code=status, response_body=body)
