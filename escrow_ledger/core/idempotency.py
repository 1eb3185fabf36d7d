"""
Webhook idempotency store.

The ``webhook_events`` table with its UNIQUE(source, event_key) constraint is
the authoritative record of processed deliveries. The claim row is inserted in
the same transaction as the state change it guards, so either both commit or
neither does and the sender's re-delivery is processed again.

Redis, when configured, is only a fast path for obvious replays.
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.database.models import WebhookEvent
from escrow_ledger.domain.errors import DuplicateEvent
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookEventStore:
    """Claims webhook idempotency keys in the database, with an optional Redis cache."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client

    def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Return the Redis client, creating it lazily when a URL is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _cache_key(source: str, event_key: str) -> str:
        return f"webhook:processed:{source}:{event_key}"

    async def seen(self, source: str, event_key: str) -> bool:
        """
        Check the Redis cache for an already processed event.

        Returns False when Redis is not configured or unavailable; the database
        constraint still catches the duplicate.
        """
        redis = self._ensure_redis()
        if redis is None:
            return False
        try:
            exists = await redis.exists(self._cache_key(source, event_key))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), source=source)
            return False
        if exists:
            metrics.record_dedup_hit("redis")
        return bool(exists)

    async def mark_processed(self, source: str, event_key: str) -> None:
        """Cache a committed event key. Failures are logged and ignored."""
        redis = self._ensure_redis()
        if redis is None:
            return
        try:
            await redis.setex(
                self._cache_key(source, event_key), self.settings.webhook_dedup_ttl, "1"
            )
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), source=source)

    async def claim(
        self,
        db: AsyncSession,
        source: str,
        event_type: str,
        event_key: str,
        reference: str,
        payload: Dict[str, Any],
    ) -> WebhookEvent:
        """
        Insert the idempotency row inside the caller's transaction.

        Args:
            db: Database session (the caller commits)
            source: ``gateway`` or ``payout_provider``
            event_type: Event name, e.g. ``charge.success``
            event_key: Idempotency key, unique per source
            reference: Payment or payout reference the event is about
            payload: Verified event body

        Returns:
            WebhookEvent: The claimed row

        Raises:
            DuplicateEvent: If the key was already claimed by a committed transaction
        """
        event = WebhookEvent(
            source=source,
            event_type=event_type,
            event_key=event_key,
            reference=reference,
            payload=payload,
            outcome="received",
        )
        try:
            async with db.begin_nested():
                db.add(event)
                await db.flush()
        except IntegrityError as e:
            metrics.record_dedup_hit("database")
            raise DuplicateEvent(
                "Event already processed", source=source, event_key=event_key
            ) from e
        return event

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
