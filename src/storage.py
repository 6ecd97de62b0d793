from __future__ import annotations

from datetime import datetime
import logging
from pathlib import Path
from typing import Any, Sequence

import duckdb

from providers import ProviderConfig
from records import CounterIncrement, HistoryEntry, InvocationOutcome, ProviderStats

logger = logging.getLogger(__name__)


class KeepaliveStorage:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS provider_stats (
                provider_index INTEGER PRIMARY KEY,
                provider_name VARCHAR NOT NULL,
                model VARCHAR NOT NULL,
                url VARCHAR NOT NULL,
                total_calls BIGINT NOT NULL DEFAULT 0,
                success_calls BIGINT NOT NULL DEFAULT 0,
                failed_calls BIGINT NOT NULL DEFAULT 0,
                last_call VARCHAR,
                next_scheduled_call VARCHAR
            );

            CREATE SEQUENCE IF NOT EXISTS call_history_id_seq;

            CREATE TABLE IF NOT EXISTS call_history (
                id BIGINT PRIMARY KEY DEFAULT nextval('call_history_id_seq'),
                provider_index INTEGER NOT NULL,
                provider_name VARCHAR NOT NULL,
                model VARCHAR,
                question VARCHAR NOT NULL,
                answer VARCHAR NOT NULL,
                success BOOLEAN NOT NULL,
                error VARCHAR NOT NULL,
                duration_ms BIGINT NOT NULL,
                stream_chunks BIGINT NOT NULL,
                attempts BIGINT NOT NULL,
                timestamp VARCHAR NOT NULL
            );
            """
        )

    def sync_providers(self, providers: Sequence[ProviderConfig], next_call: datetime) -> None:
        logger.debug("Syncing %d provider(s) into stats table", len(providers))
        self.connection.execute("BEGIN TRANSACTION")
        try:
            for provider in providers:
                self.connection.execute(
                    """
                    INSERT INTO provider_stats (
                        provider_index,
                        provider_name,
                        model,
                        url,
                        next_scheduled_call
                    )
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (provider_index) DO UPDATE SET
                        provider_name = excluded.provider_name,
                        model = excluded.model,
                        url = excluded.url
                    """,
                    [
                        provider.index,
                        provider.name,
                        provider.model,
                        provider.url,
                        next_call.isoformat(),
                    ],
                )
            self.connection.execute(
                "DELETE FROM provider_stats WHERE provider_index >= ?",
                [len(providers)],
            )
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error while syncing providers, rolling back transaction", exc_info=True)
            self.connection.execute("ROLLBACK")
            raise

    def load_stats(self, providers: Sequence[ProviderConfig]) -> list[ProviderStats]:
        # Called from worker threads through the snapshot cache; use a dedicated cursor.
        cursor = self.connection.cursor()
        try:
            rows = cursor.execute(
                """
                SELECT
                    provider_index,
                    total_calls,
                    success_calls,
                    failed_calls,
                    last_call,
                    next_scheduled_call
                FROM provider_stats
                ORDER BY provider_index ASC
                """
            ).fetchall()
        finally:
            cursor.close()

        by_index = {int(row[0]): row for row in rows}
        stats: list[ProviderStats] = []
        for provider in providers:
            row = by_index.get(provider.index)
            if row is None:
                stats.append(ProviderStats(provider=provider))
                continue
            stats.append(
                ProviderStats(
                    provider=provider,
                    total_calls=int(row[1] or 0),
                    success_calls=int(row[2] or 0),
                    failed_calls=int(row[3] or 0),
                    last_call=row[4],
                    next_scheduled_call=row[5],
                )
            )
        return stats

    def apply_increments(self, increments: Sequence[CounterIncrement]) -> None:
        if not increments:
            return
        logger.debug("Applying %d counter increments", len(increments))
        self.connection.executemany(
            """
            UPDATE provider_stats
            SET
                total_calls = total_calls + ?,
                success_calls = success_calls + ?,
                failed_calls = failed_calls + ?,
                last_call = ?,
                next_scheduled_call = ?
            WHERE provider_index = ?
            """,
            [
                (
                    increment.total,
                    increment.success,
                    increment.failed,
                    increment.last_call.isoformat(),
                    increment.next_scheduled_call.isoformat(),
                    increment.provider_index,
                )
                for increment in increments
            ],
        )

    def append_history(self, outcomes: Sequence[InvocationOutcome], limit: int) -> None:
        if not outcomes:
            return
        logger.debug("Appending %d history records", len(outcomes))
        self.connection.executemany(
            """
            INSERT INTO call_history (
                provider_index,
                provider_name,
                model,
                question,
                answer,
                success,
                error,
                duration_ms,
                stream_chunks,
                attempts,
                timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    outcome.provider_index,
                    outcome.provider_name,
                    outcome.model,
                    outcome.question,
                    outcome.answer or "",
                    outcome.success,
                    outcome.error or "",
                    outcome.duration_ms,
                    outcome.stream_chunks,
                    outcome.attempts,
                    outcome.timestamp,
                )
                for outcome in outcomes
            ],
        )
        self.trim_history(limit)

    def trim_history(self, limit: int) -> None:
        self.connection.execute(
            """
            DELETE FROM call_history
            WHERE id NOT IN (
                SELECT id
                FROM call_history
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            )
            """,
            [limit],
        )

    def list_history(self, limit: int) -> list[HistoryEntry]:
        rows = self.connection.execute(
            """
            SELECT
                provider_index,
                provider_name,
                question,
                answer,
                success,
                error,
                duration_ms,
                timestamp
            FROM call_history
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            [limit],
        ).fetchall()
        return [self._row_to_history_entry(row) for row in rows]

    def recent_history(self, since: datetime, limit: int = 20) -> list[HistoryEntry]:
        rows = self.connection.execute(
            """
            SELECT
                provider_index,
                provider_name,
                question,
                answer,
                success,
                error,
                duration_ms,
                timestamp
            FROM call_history
            WHERE timestamp > ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            [since.isoformat(), limit],
        ).fetchall()
        return [self._row_to_history_entry(row) for row in rows]

    def clear_history(self) -> None:
        logger.debug("Clearing call history")
        self.connection.execute("DELETE FROM call_history")

    def close(self) -> None:
        self.connection.close()

    @staticmethod
    def _row_to_history_entry(row: Any) -> HistoryEntry:
        return HistoryEntry(
            provider_index=int(row[0]),
            provider_name=row[1],
            question=row[2],
            answer=row[3] or "",
            success=bool(row[4]),
            error=row[5] or "",
            duration_ms=int(row[6] or 0),
            timestamp=row[7],
        )
