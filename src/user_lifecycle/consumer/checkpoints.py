"""Partition offset checkpoints: start resolution and per-message commits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import sqlite3
from typing import Any, Callable, Protocol

import psycopg

from user_lifecycle.errors import CheckpointCommitError, ConfigError


logger = logging.getLogger("user_lifecycle.consumer.checkpoints")

OFFSET_OLDEST = "oldest"
OFFSET_NEWEST = "newest"
INITIAL_POSITIONS = (OFFSET_OLDEST, OFFSET_NEWEST)

# Non-empty marker stored with every commit so offset 0 is told apart from "never committed".
CHECKPOINT_METADATA = "user-lifecycle"

KAFKA_LOCATOR = "kafka"


class OffsetStore(Protocol):
    def load(self, *, group_id: str, topic: str, partition: int) -> tuple[int, str] | None:
        ...

    def save(self, *, group_id: str, topic: str, partition: int, offset: int, metadata: str) -> None:
        ...

    def close(self) -> None:
        ...


class _GroupOffsetBackend(Protocol):
    def committed(self, topic: str, partition: int) -> tuple[int, str] | None:
        ...

    def commit(self, topic: str, partition: int, offset: int, metadata: str) -> None:
        ...


class PartitionOffsetManager:
    def __init__(
        self,
        store: OffsetStore,
        *,
        topic: str,
        partition: int,
        group_id: str,
        initial_position: str,
        watermarks: Callable[[str, int], tuple[int, int]],
    ) -> None:
        if initial_position not in INITIAL_POSITIONS:
            raise ConfigError("INITIAL_OFFSET_INVALID", str(initial_position))
        self.topic = topic
        self.partition = int(partition)
        self.group_id = group_id
        self.initial_position = initial_position
        self.last_committed: int | None = None
        self._store = store
        self._watermarks = watermarks

    def resolve_start(self) -> int:
        stored = self._store.load(group_id=self.group_id, topic=self.topic, partition=self.partition)
        if stored is not None and stored[1]:
            logger.info(
                "Checkpoint found group=%s topic=%s partition=%s offset=%s",
                self.group_id,
                self.topic,
                self.partition,
                stored[0],
            )
            return int(stored[0])
        low, high = self._watermarks(self.topic, self.partition)
        start = low if self.initial_position == OFFSET_OLDEST else high
        logger.info(
            "No checkpoint for group=%s topic=%s partition=%s; starting at %s offset=%s",
            self.group_id,
            self.topic,
            self.partition,
            self.initial_position,
            start,
        )
        return int(start)

    def commit(self, offset: int) -> bool:
        try:
            self._store.save(
                group_id=self.group_id,
                topic=self.topic,
                partition=self.partition,
                offset=int(offset),
                metadata=CHECKPOINT_METADATA,
            )
        except Exception as exc:
            failure = CheckpointCommitError("CHECKPOINT_COMMIT_FAILED", str(exc)[:256])
            logger.warning(
                "Checkpoint commit failed topic=%s partition=%s offset=%s detail=%s",
                self.topic,
                self.partition,
                offset,
                failure,
            )
            return False
        self.last_committed = int(offset)
        logger.debug("Checkpoint committed topic=%s partition=%s offset=%s", self.topic, self.partition, offset)
        return True

    def close(self) -> None:
        self._store.close()


class KafkaGroupOffsetStore:
    """Offsets kept by the broker under the consumer group; commits are asynchronous."""

    def __init__(self, backend: _GroupOffsetBackend) -> None:
        self._backend = backend

    def load(self, *, group_id: str, topic: str, partition: int) -> tuple[int, str] | None:
        return self._backend.committed(topic, partition)

    def save(self, *, group_id: str, topic: str, partition: int, offset: int, metadata: str) -> None:
        self._backend.commit(topic, partition, offset, metadata)

    def close(self) -> None:
        return


@dataclass
class SqliteOffsetStore:
    path: Path

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_consumer_checkpoints (
                    consumer_group TEXT NOT NULL,
                    topic TEXT NOT NULL,
                    partition_id INTEGER NOT NULL,
                    next_offset INTEGER NOT NULL,
                    metadata TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (consumer_group, topic, partition_id)
                )
                """
            )

    def load(self, *, group_id: str, topic: str, partition: int) -> tuple[int, str] | None:
        with sqlite3.connect(self.path) as conn:
            row = conn.execute(
                """
                SELECT next_offset, metadata
                FROM user_consumer_checkpoints
                WHERE consumer_group = ? AND topic = ? AND partition_id = ?
                """,
                (group_id, topic, int(partition)),
            ).fetchone()
        if row is None:
            return None
        return int(row[0]), str(row[1] or "")

    def save(self, *, group_id: str, topic: str, partition: int, offset: int, metadata: str) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                """
                INSERT INTO user_consumer_checkpoints (
                    consumer_group, topic, partition_id, next_offset, metadata, updated_at_utc
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(consumer_group, topic, partition_id) DO UPDATE SET
                    next_offset = excluded.next_offset,
                    metadata = excluded.metadata,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (group_id, topic, int(partition), int(offset), metadata, _utc_now()),
            )

    def close(self) -> None:
        return


@dataclass
class PostgresOffsetStore:
    dsn: str

    def __post_init__(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_consumer_checkpoints (
                    consumer_group TEXT NOT NULL,
                    topic TEXT NOT NULL,
                    partition_id INTEGER NOT NULL,
                    next_offset BIGINT NOT NULL,
                    metadata TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (consumer_group, topic, partition_id)
                )
                """
            )

    def load(self, *, group_id: str, topic: str, partition: int) -> tuple[int, str] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT next_offset, metadata
                FROM user_consumer_checkpoints
                WHERE consumer_group = %s AND topic = %s AND partition_id = %s
                """,
                (group_id, topic, int(partition)),
            ).fetchone()
        if row is None:
            return None
        return int(row[0]), str(row[1] or "")

    def save(self, *, group_id: str, topic: str, partition: int, offset: int, metadata: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_consumer_checkpoints (
                    consumer_group, topic, partition_id, next_offset, metadata, updated_at_utc
                ) VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (consumer_group, topic, partition_id) DO UPDATE SET
                    next_offset = EXCLUDED.next_offset,
                    metadata = EXCLUDED.metadata,
                    updated_at_utc = EXCLUDED.updated_at_utc
                """,
                (group_id, topic, int(partition), int(offset), metadata, _utc_now()),
            )

    def close(self) -> None:
        return

    def _connect(self) -> psycopg.Connection[Any]:
        return psycopg.connect(self.dsn)


def build_offset_store(locator: str, *, group_backend: _GroupOffsetBackend | None = None) -> OffsetStore:
    value = str(locator or "").strip()
    if not value or value == KAFKA_LOCATOR:
        if group_backend is None:
            raise ConfigError("CHECKPOINT_KAFKA_BACKEND_MISSING")
        return KafkaGroupOffsetStore(group_backend)
    if is_postgres_dsn(value):
        return PostgresOffsetStore(dsn=value)
    return SqliteOffsetStore(path=Path(_sqlite_path(value)))


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator.replace("sqlite:///", "", 1)
    if locator.startswith("sqlite://"):
        return locator.replace("sqlite://", "", 1)
    return locator


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
