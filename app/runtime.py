from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from app.broker import InMemoryBroker, create_broker_from_env
from app.cache_backend import InMemoryCacheBackend, create_cache_from_env
from app.coordination import ConcurrencySemaphore, DistributedLock, FailPolicy, RateLimiter
from app.dlq import DeadLetterService
from app.metrics import PipelineMetrics
from app.publisher import QueuePublisher
from app.reconciler import SyncWorker
from app.recovery import FallbackRecoveryJob
from app.security import BrokerSignatureConfig, JwtSecurityConfig
from app.settings import PipelineSettings, true_stack_required
from app.store import InMemoryStore, create_store_from_env

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _create_with_fallback(
    concern: str,
    factory: Callable[[Mapping[str, str]], T],
    fallback: Callable[[], T],
    env: Mapping[str, str],
) -> T:
    try:
        return factory(env)
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("backend_fallback concern=%s error=%s", concern, exc)
        return fallback()


@dataclass
class PipelineRuntime:
    settings: PipelineSettings
    cache: Any
    broker: Any
    store: InMemoryStore
    metrics: PipelineMetrics
    lock: DistributedLock
    semaphore: ConcurrencySemaphore
    rate_limiter: RateLimiter
    publisher: QueuePublisher
    dead_letters: DeadLetterService
    worker: SyncWorker
    recovery: FallbackRecoveryJob
    jwt_config: JwtSecurityConfig
    signature_config: BrokerSignatureConfig

    def reset(self) -> None:
        self.store.reset()
        for component in (self.cache, self.broker):
            reset_fn = getattr(component, "reset", None)
            if callable(reset_fn):
                reset_fn()
        self.worker.reset_stats()

    def drain_broker(self, *, max_messages: int = 100) -> dict[str, Any]:
        """Deliver pending in-memory broker messages straight to the worker."""
        if not isinstance(self.broker, InMemoryBroker):
            raise RuntimeError("broker backend does not support in-process drain")
        drained = self.broker.drain(
            lambda delivery: self.worker.handle(
                delivery.body,
                message_id=delivery.message_id,
                retried=delivery.retried,
            ).http_status,
            max_messages=max_messages,
        )
        return {
            "drain": drained.as_dict(),
            "pending": self.broker.pending_count(),
            "worker": self.worker.stats.as_dict(),
        }


def build_runtime(environ: Mapping[str, str] | None = None) -> PipelineRuntime:
    env = os.environ if environ is None else environ
    settings = PipelineSettings.from_env(env)
    cache = _create_with_fallback("cache", create_cache_from_env, InMemoryCacheBackend, env)
    broker = _create_with_fallback(
        "broker",
        lambda e: create_broker_from_env(e, dedup_window_s=settings.dedup_window_s),
        lambda: InMemoryBroker(dedup_window_s=settings.dedup_window_s),
        env,
    )
    store = _create_with_fallback("store", create_store_from_env, InMemoryStore, env)

    metrics = PipelineMetrics(cache)
    lock = DistributedLock(cache, fail_policy=FailPolicy.CLOSED)
    semaphore = ConcurrencySemaphore(cache, fail_policy=FailPolicy.OPEN)
    rate_limiter = RateLimiter(cache, fail_policy=FailPolicy.OPEN)
    publisher = QueuePublisher(
        broker=broker,
        fallback_repository=store.fallback_repository,
        destination=settings.worker_url,
        retries=settings.publish_retries,
    )
    dead_letters = DeadLetterService(
        store=store,
        publisher=publisher,
        report_timeout_s=settings.report_timeout_ms / 1000.0,
    )
    worker = SyncWorker(
        store=store,
        dead_letters=dead_letters,
        semaphore=semaphore,
        metrics=metrics,
        settings=settings,
    )
    recovery = FallbackRecoveryJob(
        store=store,
        publisher=publisher,
        lock=lock,
        batch_size=settings.recovery_batch_size,
        concurrency=settings.recovery_concurrency,
        lock_ttl_s=settings.recovery_lock_ttl_s,
    )
    logger.info(
        "runtime_built cache=%s broker=%s store=%s",
        type(cache).__name__,
        type(broker).__name__,
        store.backend_name,
    )
    return PipelineRuntime(
        settings=settings,
        cache=cache,
        broker=broker,
        store=store,
        metrics=metrics,
        lock=lock,
        semaphore=semaphore,
        rate_limiter=rate_limiter,
        publisher=publisher,
        dead_letters=dead_letters,
        worker=worker,
        recovery=recovery,
        jwt_config=JwtSecurityConfig.from_env(env),
        signature_config=BrokerSignatureConfig.from_env(env),
    )
