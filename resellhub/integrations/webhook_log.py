"""Bounded diagnostic log of verified webhook payloads, kept in Redis."""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class WebhookLog:
    """
    Most recent verified webhooks, newest first.

    Operational debugging only. Every failure is logged and swallowed so a
    Redis outage never aborts a reconciliation.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis],
        key: str = "webhooks:pakasir:log",
        max_entries: int = 50,
    ):
        self.redis_client = redis_client
        self.key = key
        self.max_entries = max_entries

    async def append(self, data: Dict[str, Any], verification: Dict[str, Any]) -> None:
        """Push one entry and trim the list to ``max_entries``."""
        if self.redis_client is None:
            return
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
            "verification": verification,
        }
        try:
            await self.redis_client.lpush(self.key, json.dumps(entry, default=str))
            await self.redis_client.ltrim(self.key, 0, self.max_entries - 1)
        except Exception as e:
            logger.warning("webhook_log_append_failed", error=str(e))

    async def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if self.redis_client is None:
            return []
        stop = (limit or self.max_entries) - 1
        try:
            raw_entries = await self.redis_client.lrange(self.key, 0, stop)
        except Exception as e:
            logger.warning("webhook_log_read_failed", error=str(e))
            return []
        return [json.loads(raw) for raw in raw_entries]
