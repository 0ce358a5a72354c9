"""
Source re-sync job: pull every active connection of one kind through its
adapter and feed the result into the ingestion pipeline.

Connections are processed one at a time with a fixed pause in between to
stay under the source API's rate limits.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from brainbits.accounts.repository import ConnectionRepository
from brainbits.config import SYNC_DELAY_BETWEEN_CONNECTIONS
from brainbits.ingestion.pipeline import run_sync_pipeline
from brainbits.ingestion.repository import ScopeRepository, SyncStateRepository
from brainbits.ingestion.types import SourceAdapter
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter, log_event
from brainbits.utils.dates import utc_now

logger = get_logger(__name__)


def sync_all_active_connections(
    source_kind: str,
    adapter: SourceAdapter,
    now: datetime | None = None,
    delay_seconds: float = SYNC_DELAY_BETWEEN_CONNECTIONS,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """
    Re-sync all active connections of source_kind.

    A connection that fails is logged and counted; the rest still run.

    Returns:
        {"synced": int, "failed": int, "total_documents": int}

    Side Effects:
        - Calls the source adapter once per connection
        - Writes documents and sync_state through the pipeline
        - Sleeps delay_seconds between connections
    """
    connections = ConnectionRepository.list_active(source_kind)
    stats = {"synced": 0, "failed": 0, "total_documents": 0}
    logger.info("[sync-%s] %d active connections", source_kind, len(connections))

    for index, connection in enumerate(connections):
        if index > 0 and delay_seconds > 0:
            sleep_fn(delay_seconds)

        try:
            scope = ScopeRepository.list_enabled(connection.id)
            state = SyncStateRepository.get(connection.id)
            cursor = state["cursor"] if state else None

            pulled = adapter.pull(connection, scope, cursor)
            result = run_sync_pipeline(
                connection_id=connection.id,
                user_id=connection.user_id,
                items=pulled.items,
                received_at=now or utc_now(),
                source_kind=source_kind,
                next_cursor=pulled.next_cursor,
            )
        except Exception:
            logger.exception("[sync-%s] connection %s failed", source_kind, connection.id)
            counter("sync.connection_failed")
            stats["failed"] += 1
            continue

        stats["synced"] += 1
        stats["total_documents"] += result.accepted
        logger.info(
            "[sync-%s] connection %s: %d accepted, %d skipped, %d rejected",
            source_kind,
            connection.id,
            result.accepted,
            result.skipped,
            result.rejected,
        )

    log_event("sync.completed", source_kind=source_kind, **stats)
    return stats
