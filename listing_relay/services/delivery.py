from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Literal
from uuid import uuid4

import httpx
from opentelemetry import trace

from listing_relay.core.metrics import MetricsCollector
from listing_relay.jobs.errors import DELIVERY_ERROR
from listing_relay.services.ports import DeliveryBackend
from listing_relay.services.records import DeliveryAttempt, WebhookSubscription, utcnow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

AttemptMode = Literal["initial", "retry", "replay"]
BULK_LIMIT_MAX = 500


@dataclass(slots=True)
class AttemptOutcome:
    ok: bool
    status_code: int | None
    error: str | None
    attempts: int


class DeliveryWorker:
    def __init__(
        self,
        *,
        store: DeliveryBackend,
        client: httpx.AsyncClient,
        metrics: MetricsCollector,
        timeout_seconds: float = 10.0,
        max_attempts: int = 1,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 60.0,
        user_agent: str = "listing-relay-webhooks/1.0",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.retry_max_seconds = max(0.0, retry_max_seconds)
        self.user_agent = user_agent
        self._sleep = sleep
        self._inflight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def inflight_count(self) -> int:
        return len(self._tasks)

    async def enqueue(self, subscription_id: str, event_type: str, payload: dict[str, Any]) -> DeliveryAttempt:
        """Record a pending delivery and start its first HTTP attempt in the background."""
        delivery = await self.store.create_delivery(
            DeliveryAttempt(
                delivery_id=str(uuid4()),
                subscription_id=subscription_id,
                event_type=event_type,
                payload=payload,
            )
        )
        task = asyncio.get_running_loop().create_task(self._deliver_in_background(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return delivery

    async def retry(self, delivery_id: str) -> DeliveryAttempt:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery.status != "failed" or delivery.is_resolved:
            return delivery
        return await self._attempt(delivery, mode="retry", scope="single")

    async def retry_all(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        limit: int = BULK_LIMIT_MAX,
    ) -> list[DeliveryAttempt]:
        failures = await self.store.list_deliveries(
            subscription_id=subscription_id,
            event_type=event_type,
            status="failed",
            is_resolved=False,
            limit=_bounded_limit(limit),
        )
        return await self._attempt_bulk(failures, mode="retry")

    async def replay(self, delivery_id: str) -> DeliveryAttempt:
        delivery = await self.store.get_delivery(delivery_id)
        return await self._attempt(delivery, mode="replay", scope="single")

    async def replay_all(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        limit: int = BULK_LIMIT_MAX,
    ) -> list[DeliveryAttempt]:
        rows = await self.store.list_deliveries(
            subscription_id=subscription_id,
            event_type=event_type,
            limit=_bounded_limit(limit),
        )
        targets = [row for row in rows if row.status != "pending"]
        return await self._attempt_bulk(targets, mode="replay")

    async def mark_resolved(self, delivery_id: str) -> DeliveryAttempt:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery.is_resolved:
            return delivery
        delivery.is_resolved = True
        logger.info("delivery marked resolved delivery_id=%s status=%s", delivery_id, delivery.status)
        return await self.store.save_delivery(delivery)

    async def drain(self, timeout: float | None = None) -> None:
        while self._tasks:
            _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                return

    async def _deliver_in_background(self, delivery: DeliveryAttempt) -> None:
        try:
            await self._attempt(delivery, mode="initial", scope="single")
        except Exception:
            logger.exception("webhook delivery crashed delivery_id=%s", delivery.delivery_id)

    async def _attempt_bulk(self, rows: list[DeliveryAttempt], *, mode: AttemptMode) -> list[DeliveryAttempt]:
        results = await asyncio.gather(
            *(self._attempt(row, mode=mode, scope="bulk") for row in rows),
            return_exceptions=True,
        )
        attempted: list[DeliveryAttempt] = []
        for row, result in zip(rows, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "bulk webhook delivery failed delivery_id=%s mode=%s error=%s",
                    row.delivery_id,
                    mode,
                    result,
                    exc_info=result,
                )
                result = replace(
                    row,
                    status="failed",
                    is_resolved=False,
                    last_error=_interrupted_error(result),
                )
            attempted.append(result)
        return attempted

    async def _attempt(self, delivery: DeliveryAttempt, *, mode: AttemptMode, scope: str) -> DeliveryAttempt:
        if delivery.delivery_id in self._inflight:
            return delivery
        self._inflight.add(delivery.delivery_id)
        # Whether the stored row currently reads ``pending`` because of this attempt.
        left_pending = mode == "initial"
        try:
            if mode == "replay":
                delivery.status = "pending"
                delivery.replay_count += 1
                delivery = await self.store.save_delivery(delivery)
                left_pending = True

            subscription = await self.store.get_subscription(delivery.subscription_id)
            started = time.perf_counter()
            with tracer.start_as_current_span("webhook.deliver") as span:
                span.set_attribute("delivery.id", delivery.delivery_id)
                span.set_attribute("delivery.event_type", delivery.event_type)
                span.set_attribute("subscription.id", delivery.subscription_id)
                if subscription is None or not subscription.is_active:
                    outcome = AttemptOutcome(
                        ok=False,
                        status_code=None,
                        error=f"{DELIVERY_ERROR}:subscription_inactive",
                        attempts=0,
                    )
                else:
                    budget = self.max_attempts if mode == "initial" else 1
                    outcome = await self._post_with_budget(delivery, subscription, budget=budget)
                span.set_attribute("delivery.ok", outcome.ok)
            elapsed_ms = (time.perf_counter() - started) * 1000.0

            delivery.attempts += outcome.attempts
            delivery.last_attempt_at = utcnow()
            delivery.last_status_code = outcome.status_code
            if outcome.ok:
                delivery.status = "delivered"
                delivery.is_resolved = True
                delivery.last_error = None
                delivery.delivered_at = delivery.last_attempt_at
            else:
                delivery.status = "failed"
                delivery.is_resolved = False
                delivery.last_error = outcome.error

            self.metrics.incr("webhook_deliveries_total", status=delivery.status)
            self.metrics.observe("webhook_delivery_duration_ms", elapsed_ms)
            if mode != "initial":
                self.metrics.incr("webhook_replays_total", mode=f"{mode}_{scope}", outcome=delivery.status)
            logger.info(
                "webhook delivery delivery_id=%s subscription_id=%s event_type=%s mode=%s status=%s "
                "status_code=%s duration_ms=%.2f error=%s",
                delivery.delivery_id,
                delivery.subscription_id,
                delivery.event_type,
                mode,
                delivery.status,
                delivery.last_status_code,
                elapsed_ms,
                delivery.last_error,
            )
            saved = await self.store.save_delivery(delivery)
            left_pending = False
            return saved
        except BaseException as exc:
            if left_pending:
                await self._record_interrupted(delivery, exc)
            raise
        finally:
            self._inflight.discard(delivery.delivery_id)

    async def _record_interrupted(self, delivery: DeliveryAttempt, exc: BaseException) -> None:
        delivery.status = "failed"
        delivery.is_resolved = False
        delivery.last_error = _interrupted_error(exc)
        logger.warning(
            "webhook delivery interrupted delivery_id=%s error=%s",
            delivery.delivery_id,
            delivery.last_error,
        )
        try:
            await self.store.save_delivery(delivery)
        except Exception:
            logger.exception("could not record interrupted delivery delivery_id=%s", delivery.delivery_id)
            return
        self.metrics.incr("webhook_deliveries_total", status="failed")

    async def _post_with_budget(
        self,
        delivery: DeliveryAttempt,
        subscription: WebhookSubscription,
        *,
        budget: int,
    ) -> AttemptOutcome:
        outcome = AttemptOutcome(ok=False, status_code=None, error=None, attempts=0)
        for attempt in range(1, budget + 1):
            status_code, error = await self._post_once(delivery, subscription)
            outcome = AttemptOutcome(ok=error is None, status_code=status_code, error=error, attempts=attempt)
            if outcome.ok or attempt >= budget:
                break
            delay = self._compute_retry_delay_seconds(attempt=attempt)
            logger.info(
                "webhook retry scheduled delivery_id=%s attempt=%s max_attempts=%s delay_seconds=%.1f",
                delivery.delivery_id,
                attempt,
                budget,
                delay,
            )
            await self._sleep(delay)
        return outcome

    async def _post_once(
        self,
        delivery: DeliveryAttempt,
        subscription: WebhookSubscription,
    ) -> tuple[int | None, str | None]:
        body = json.dumps({"event": delivery.event_type, "data": delivery.payload}, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Event-Type": delivery.event_type,
            "X-Webhook-Id": delivery.delivery_id,
            "X-Timestamp": str(int(time.time() * 1000)),
        }
        if subscription.signing_secret:
            headers["X-Signature"] = sign_body(subscription.signing_secret, body)

        try:
            response = await self.client.post(
                subscription.endpoint_url,
                content=body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            return None, f"{DELIVERY_ERROR}:{type(exc).__name__}:{exc}".rstrip(":")

        if 200 <= response.status_code < 300:
            return response.status_code, None
        return response.status_code, f"{DELIVERY_ERROR}:status_{response.status_code}"

    def _compute_retry_delay_seconds(self, *, attempt: int) -> float:
        if self.retry_base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = self.retry_base_seconds * (2**multiplier)
        return min(delay, self.retry_max_seconds)


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _bounded_limit(limit: int) -> int:
    return max(1, min(limit, BULK_LIMIT_MAX))


def _interrupted_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return f"{DELIVERY_ERROR}:interrupted"
    return f"{DELIVERY_ERROR}:interrupted:{type(exc).__name__}:{exc}"
