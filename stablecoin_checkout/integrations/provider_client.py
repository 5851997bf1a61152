"""
Payment provider API client with retry logic and error classification.

Implements:
- Bounded timeout on every call
- Exponential backoff for transient errors
- Circuit breaker pattern
- Two-phase payouts (stage a payout request, then execute it)
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import PayoutRecipient, Settings
from ..monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PAYOUT_REQUEST_PATH = "/api/payouts/payout"


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff
    CIRCUIT_OPEN = "circuit_open"  # Provider considered down, fail fast


class ProviderError(Exception):
    """Base exception for payment provider errors."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (ProviderErrorType.TRANSIENT, ProviderErrorType.RATE_LIMIT)


class PayoutStatus:
    """Provider payout request statuses the checkout reacts to."""

    AWAITING_EXECUTION = "AWAITING_EXECUTION"
    CANCELED = "CANCELED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PayoutRequest:
    """Snapshot of a provider payout request."""

    id: str
    status: str
    payouts: List[Dict[str, Any]] = field(default_factory=list)


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Stops calling the provider for ``timeout`` seconds once
    ``failure_threshold`` consecutive transient failures have been seen.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute a coroutine function with circuit breaker protection.

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise ProviderError(
                    "Circuit breaker is open",
                    ProviderErrorType.CIRCUIT_OPEN,
                )

        try:
            result = await func()
        except ProviderError as e:
            if e.retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
            self._set_state("open")

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)
        logger.info("circuit_breaker_state_changed", state=state)


class ProviderClient:
    """
    Async client for the payment provider's payout API.

    Features:
    - Every call bounded by ``provider_timeout_seconds``
    - Automatic retry with exponential backoff for transient/rate-limit errors
    - Circuit breaker
    - Comprehensive error classification
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize provider client.

        Args:
            settings: Application settings
            http_client: Optional preconfigured httpx client (tests inject a
                MockTransport-backed one)
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.provider_api_url,
            timeout=settings.provider_timeout_seconds,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info("provider_client_initialized", base_url=settings.provider_api_url)

    def _headers(self, include_transfer_key: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.settings.provider_api_key}",
            "Content-Type": "application/json",
        }
        if include_transfer_key:
            headers["transfer-api-key"] = self.settings.provider_transfer_api_key
        return headers

    @staticmethod
    def _classify_status(status_code: int) -> ProviderErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status returned by the provider

        Returns:
            ProviderErrorType: Error classification
        """
        if status_code == 429:
            return ProviderErrorType.RATE_LIMIT
        if status_code >= 500:
            return ProviderErrorType.TRANSIENT
        return ProviderErrorType.PERMANENT

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        include_transfer_key: bool = False,
    ) -> Any:
        start_time = time.monotonic()
        try:
            response = await self.http_client.request(
                method,
                path,
                json=body,
                headers=self._headers(include_transfer_key),
                timeout=self.settings.provider_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            metrics.record_provider_api_call(operation, "timeout", time.monotonic() - start_time)
            raise ProviderError(
                f"Provider {operation} timed out after {self.settings.provider_timeout_seconds}s",
                ProviderErrorType.TRANSIENT,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            metrics.record_provider_api_call(operation, "unreachable", time.monotonic() - start_time)
            raise ProviderError(
                f"Provider {operation} failed: {str(e)}",
                ProviderErrorType.TRANSIENT,
                original_error=e,
            ) from e

        metrics.record_provider_api_call(
            operation, str(response.status_code), time.monotonic() - start_time
        )

        if response.is_error:
            error_type = self._classify_status(response.status_code)
            logger.error(
                "provider_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
                body=response.text[:500],
            )
            raise ProviderError(
                f"Provider API {response.status_code}: {response.text[:500]}",
                error_type,
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"Provider {operation} returned invalid JSON",
                ProviderErrorType.PERMANENT,
                status_code=response.status_code,
                original_error=e,
            ) from e

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        include_transfer_key: bool = False,
        idempotent: bool = True,
    ) -> Any:
        """
        Send a request through the circuit breaker, retrying retryable errors.

        Non-idempotent calls are only retried on rate limiting, where the
        provider has rejected the request outright. A timeout, transport error
        or 5xx may have been applied and is raised to the caller instead.
        """
        logger.info("provider_request", operation=operation, method=method, path=path)

        def should_retry(e: BaseException) -> bool:
            if not isinstance(e, ProviderError):
                return False
            if idempotent:
                return e.retryable
            return e.error_type == ProviderErrorType.RATE_LIMIT

        retrying = AsyncRetrying(
            retry=retry_if_exception(should_retry),
            stop=stop_after_attempt(self.settings.provider_retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_retry_base_delay, max=16
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self.circuit_breaker.call(
                        lambda: self._send(operation, method, path, body, include_transfer_key)
                    )
        except ProviderError as e:
            metrics.record_provider_api_error(e.error_type.value)
            raise

    async def create_payout_request(
        self,
        source_account_id: str,
        amount: Decimal,
        recipient: PayoutRecipient,
        memo: str,
    ) -> str:
        """
        Stage a payout request.

        A staged request moves no money until it is executed, so retrying
        this call can at worst leave an unexecuted duplicate behind.

        Returns:
            str: Provider payout request id
        """
        payout = {
            "amount": {
                "tokenAmount": str(amount),
                "tokenSymbol": self.settings.token_symbol,
            },
            **recipient.to_provider_payload(),
        }
        data = await self._request(
            "create_payout_request",
            "POST",
            PAYOUT_REQUEST_PATH,
            body={"sourceAccountId": source_account_id, "memo": memo, "payouts": [payout]},
        )
        request_id = (data or {}).get("id")
        if not request_id:
            raise ProviderError(
                "Provider accepted payout request without an id",
                ProviderErrorType.PERMANENT,
            )

        logger.info("payout_request_created", payout_request_id=request_id, amount=str(amount))
        return str(request_id)

    async def execute_payout_request(self, payout_request_id: str) -> str:
        """
        Execute a staged payout request.

        Not retried on timeouts or server errors: the provider may already
        have moved the money. Callers confirm such failures with
        ``get_payout_request``.

        Returns:
            str: Provider status after execution
        """
        data = await self._request(
            "execute_payout_request",
            "POST",
            f"{PAYOUT_REQUEST_PATH}/{payout_request_id}/execute",
            body={"exchangeRateToleranceMode": "FLEXIBLE"},
            include_transfer_key=True,
            idempotent=False,
        )
        status = str((data or {}).get("status", ""))

        logger.info(
            "payout_request_executed",
            payout_request_id=payout_request_id,
            status=status,
        )
        return status

    async def get_payout_request(self, payout_request_id: str) -> PayoutRequest:
        """Fetch the current state of a payout request."""
        data = await self._request(
            "get_payout_request",
            "GET",
            f"{PAYOUT_REQUEST_PATH}/{payout_request_id}",
        )
        data = data or {}
        return PayoutRequest(
            id=str(data.get("id", payout_request_id)),
            status=str(data.get("status", "")),
            payouts=list(data.get("payouts") or []),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()
