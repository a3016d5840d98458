from __future__ import annotations

from functools import partial
import json
import threading
from typing import Any, Callable

import pytest

import user_lifecycle.consumer.worker as worker_module
from user_lifecycle.consumer.checkpoints import CHECKPOINT_METADATA, OFFSET_NEWEST, OFFSET_OLDEST, PartitionOffsetManager
from user_lifecycle.consumer.config import load_consumer_config
from user_lifecycle.consumer.worker import (
    OUTCOME_DECODE_REJECTED,
    OUTCOME_PERSISTED,
    OUTCOME_STORE_FAILED,
    OUTCOME_VALIDATION_REJECTED,
    PipelineState,
    UserEventWorker,
    build_worker,
    main,
)
from user_lifecycle.errors import EXIT_UNAVAILABLE, EXIT_USAGE, ConfigError, StoreError
from user_lifecycle.event_bus import PartitionMessage
from user_lifecycle.user_store.contracts import User, to_insert_record
from user_lifecycle.user_store.store import CassandraUserStore


def _message(offset: int, value: bytes | None) -> PartitionMessage:
    return PartitionMessage(topic="users", partition=0, offset=offset, key=None, value=value)


def _user_payload(login: str | None = "ada", **extra: object) -> bytes:
    data: dict[str, object] = {
        "password": "s3cret",
        "name": "Ada",
        "birthdate": 631152000000,
        "emails": ["ada@example.com"],
    }
    if login is not None:
        data["login"] = login
    data.update(extra)
    return json.dumps({"version": 1, "data": data}).encode("utf-8")


class _FakeSource:
    """Delivers queued messages, then asks the worker to stop on the first idle poll."""

    def __init__(self, messages: list[PartitionMessage], events: list[str]) -> None:
        self.messages = list(messages)
        self.events = events
        self.worker: UserEventWorker | None = None
        self.assigned: tuple[str, int, int] | None = None
        self.paused = False

    def assign(self, topic: str, partition: int, offset: int) -> None:
        self.assigned = (topic, partition, offset)

    def poll(self) -> PartitionMessage | None:
        if self.messages:
            return self.messages.pop(0)
        assert self.worker is not None
        self.worker.request_stop()
        return None

    def pause(self) -> None:
        self.paused = True

    def close(self) -> None:
        self.events.append("source")


class _FakeStore:
    def __init__(self, events: list[str], *, failing_logins: set[str] | None = None) -> None:
        self.events = events
        self.failing_logins = failing_logins or set()
        self.writes: list[tuple[str, User]] = []

    def _record(self, operation: str, user: User) -> None:
        if user.login in self.failing_logins:
            raise StoreError(f"USER_{operation.upper()}_FAILED", "write timeout")
        self.writes.append((operation, user))

    def insert(self, user: User) -> None:
        to_insert_record(user, now_ms=0)
        self._record("insert", user)

    def update(self, user: User) -> bool:
        self._record("update", user)
        return True

    def remove(self, user: User) -> bool:
        self._record("remove", user)
        return True

    def close(self) -> None:
        self.events.append("store")


class _MemoryOffsets:
    def __init__(self, events: list[str], stored: tuple[int, str] | None = None, *, fail: bool = False) -> None:
        self.events = events
        self.stored = stored
        self.fail = fail
        self.saved: list[int] = []

    def load(self, *, group_id: str, topic: str, partition: int) -> tuple[int, str] | None:
        return self.stored

    def save(self, *, group_id: str, topic: str, partition: int, offset: int, metadata: str) -> None:
        if self.fail:
            raise RuntimeError("coordinator not available")
        self.saved.append(offset)
        self.stored = (offset, metadata)

    def close(self) -> None:
        self.events.append("offsets")


def _worker(
    messages: list[PartitionMessage],
    *,
    operation: str = "create",
    stored: tuple[int, str] | None = None,
    position: str = OFFSET_OLDEST,
    failing_logins: set[str] | None = None,
    buffer_size: int = 1,
    commit_fails: bool = False,
    source_factory: Callable[[list[PartitionMessage], list[str]], _FakeSource] = _FakeSource,
    store: Any | None = None,
) -> tuple[UserEventWorker, _FakeSource, Any, _MemoryOffsets, list[str]]:
    events: list[str] = []
    source = source_factory(messages, events)
    if store is None:
        store = _FakeStore(events, failing_logins=failing_logins)
    offsets_store = _MemoryOffsets(events, stored, fail=commit_fails)
    offsets = PartitionOffsetManager(
        offsets_store,
        topic="users",
        partition=0,
        group_id="user-lifecycle",
        initial_position=position,
        watermarks=lambda topic, partition: (0, 40),
    )
    worker = UserEventWorker(
        topic="users",
        partition=0,
        operation=operation,
        source=source,
        offsets=offsets,
        store=store,
        buffer_size=buffer_size,
    )
    source.worker = worker
    return worker, source, store, offsets_store, events


def test_every_outcome_commits_next_offset_in_order() -> None:
    worker, source, store, offsets_store, events = _worker(
        [
            _message(0, _user_payload("ada")),
            _message(1, b"{not json"),
            _message(2, _user_payload(None)),
            _message(3, _user_payload("bob")),
            _message(4, _user_payload("cy", birthdate="yesterday")),
            _message(5, _user_payload("dee", state=6)),
        ],
        failing_logins={"bob"},
    )

    summary = worker.run()

    assert source.assigned == ("users", 0, 0)
    assert offsets_store.saved == [1, 2, 3, 4, 5, 6]
    assert offsets_store.stored == (6, CHECKPOINT_METADATA)
    assert [(op, user.login, user.state) for op, user in store.writes] == [
        ("insert", "ada", "1"),
        ("insert", "dee", "6"),
    ]
    assert summary["last_committed_offset"] == 6
    assert summary["metrics"] == {
        "seen_total": 6,
        "persisted_total": 2,
        "decode_rejected_total": 1,
        "validation_rejected_total": 1,
        "store_failed_total": 2,
        "commit_failed_total": 0,
    }
    assert source.paused is True
    assert events == ["offsets", "source", "store"]
    assert worker.state == PipelineState.CLOSED


def test_resumes_from_checkpoint() -> None:
    worker, source, _, offsets_store, _ = _worker(
        [_message(7, _user_payload("ada"))],
        stored=(7, CHECKPOINT_METADATA),
        position=OFFSET_NEWEST,
    )
    worker.run()
    assert source.assigned == ("users", 0, 7)
    assert offsets_store.saved == [8]


def test_first_run_newest_starts_at_high_watermark() -> None:
    worker, source, _, _, _ = _worker([], position=OFFSET_NEWEST)
    summary = worker.run()
    assert source.assigned == ("users", 0, 40)
    assert summary["start_offset"] == 40
    assert summary["last_committed_offset"] is None


def test_buffered_messages_drain_before_close() -> None:
    messages = [_message(offset, _user_payload(f"user{offset}")) for offset in range(5)]
    worker, _, store, offsets_store, _ = _worker(messages, buffer_size=3)
    worker.run()
    assert [user.login for _, user in store.writes] == [f"user{offset}" for offset in range(5)]
    assert offsets_store.saved == [1, 2, 3, 4, 5]


class _GatedStore(_FakeStore):
    """Holds the first insert until the test releases it."""

    def __init__(self, events: list[str], release: threading.Event) -> None:
        super().__init__(events)
        self.release = release

    def insert(self, user: User) -> None:
        if user.login == "user0" and not self.release.wait(timeout=10):
            raise RuntimeError("gate never released")
        super().insert(user)


class _StopWithBacklogSource(_FakeSource):
    """Requests stop while the processor is held and the queue is full."""

    def __init__(self, messages: list[PartitionMessage], events: list[str], *, release: threading.Event) -> None:
        super().__init__(messages, events)
        self.release = release
        self.backlog_at_stop: int | None = None
        self.state_at_stop: PipelineState | None = None

    def poll(self) -> PartitionMessage | None:
        if self.messages:
            return self.messages.pop(0)
        assert self.worker is not None
        self.backlog_at_stop = self.worker._queue.qsize()
        self.worker.request_stop()
        self.state_at_stop = self.worker.state
        self.release.set()
        return None


def test_stop_with_full_buffer_commits_every_queued_message() -> None:
    release = threading.Event()
    events: list[str] = []
    messages = [_message(offset, _user_payload(f"user{offset}")) for offset in range(4)]
    worker, source, store, offsets_store, _ = _worker(
        messages,
        buffer_size=3,
        source_factory=partial(_StopWithBacklogSource, release=release),
        store=_GatedStore(events, release),
    )

    summary = worker.run()

    assert source.backlog_at_stop == 3
    assert source.state_at_stop == PipelineState.DRAINING
    assert source.paused is True
    assert [user.login for _, user in store.writes] == ["user0", "user1", "user2", "user3"]
    assert offsets_store.saved == [1, 2, 3, 4]
    assert summary["last_committed_offset"] == 4
    assert events == ["store"]
    assert worker.state == PipelineState.CLOSED


class _NullSession:
    def prepare(self, query: str) -> Any:
        return query

    def execute(self, query: Any, parameters: Any = None) -> Any:
        return []


def test_unrepresentable_timestamp_is_committed_and_skipped() -> None:
    worker, _, _, offsets_store, _ = _worker(
        [
            _message(0, _user_payload("far", birthdate="300000000000000")),
            _message(1, _user_payload("next")),
        ],
        store=CassandraUserStore(_NullSession(), clock=lambda: 1_700_000_000_000),
    )

    summary = worker.run()

    assert offsets_store.saved == [1, 2]
    assert summary["metrics"]["store_failed_total"] == 1
    assert summary["metrics"]["persisted_total"] == 1


def test_deeply_nested_payload_is_committed_and_skipped() -> None:
    depth = 200_000
    nested = b'{"version": 1, "data": ' + b"[" * depth + b"]" * depth + b"}"
    worker, _, store, offsets_store, _ = _worker([_message(0, nested), _message(1, _user_payload("next"))])

    summary = worker.run()

    assert offsets_store.saved == [1, 2]
    assert summary["metrics"]["decode_rejected_total"] == 1
    assert [user.login for _, user in store.writes] == ["next"]


class _ExplodingStore(_FakeStore):
    def insert(self, user: User) -> None:
        raise KeyError("u_login")


def test_unexpected_failure_still_commits() -> None:
    worker, _, _, offsets_store, _ = _worker([], store=_ExplodingStore([]))
    result = worker.process_message(_message(0, _user_payload("ada")))
    assert (result.outcome, result.reason, result.committed) == (OUTCOME_STORE_FAILED, "UNEXPECTED_KEYERROR", True)
    assert offsets_store.saved == [1]
    assert worker.metrics.snapshot()["store_failed_total"] == 1


def test_update_requires_login() -> None:
    worker, _, store, _, _ = _worker([], operation="update")
    rejected = worker.process_message(_message(0, b'{"data": {"name": "Ada"}}'))
    accepted = worker.process_message(_message(1, b'{"data": {"login": "ada", "name": "Ada"}}'))
    assert (rejected.outcome, rejected.reason) == (OUTCOME_VALIDATION_REJECTED, "USER_LOGIN_MISSING")
    assert accepted.outcome == OUTCOME_PERSISTED
    assert [(op, user.login, user.name) for op, user in store.writes] == [("update", "ada", "Ada")]


def test_remove_routes_to_store_remove() -> None:
    worker, _, store, _, _ = _worker([], operation="remove")
    result = worker.process_message(_message(0, b'{"data": {"login": "ada"}}'))
    assert result.outcome == OUTCOME_PERSISTED
    assert store.writes[0][0] == "remove"


def test_decode_and_store_failures_report_reason() -> None:
    worker, _, _, _, _ = _worker([], failing_logins={"ada"})
    decoded = worker.process_message(_message(0, None))
    failed = worker.process_message(_message(1, _user_payload("ada")))
    assert (decoded.outcome, decoded.reason) == (OUTCOME_DECODE_REJECTED, "ENVELOPE_EMPTY")
    assert (failed.outcome, failed.reason) == (OUTCOME_STORE_FAILED, "USER_INSERT_FAILED")
    assert decoded.committed and failed.committed


def test_commit_failure_does_not_stop_processing() -> None:
    worker, _, store, _, _ = _worker(
        [_message(0, _user_payload("ada")), _message(1, _user_payload("bob"))],
        commit_fails=True,
    )
    summary = worker.run()
    assert len(store.writes) == 2
    assert summary["metrics"]["commit_failed_total"] == 2
    assert summary["last_committed_offset"] is None


def test_stop_before_run_still_closes_everything() -> None:
    worker, _, store, offsets_store, events = _worker([_message(0, _user_payload("ada"))])
    worker.request_stop()
    worker.run()
    assert store.writes == []
    assert offsets_store.saved == []
    assert events == ["offsets", "source", "store"]


def test_offset_resolution_failure_closes_and_raises() -> None:
    worker, source, _, _, events = _worker([])

    def _broken(topic: str, partition: int) -> tuple[int, int]:
        raise RuntimeError("metadata timeout")

    worker.offsets._watermarks = _broken
    with pytest.raises(RuntimeError):
        worker.run()
    assert source.assigned is None
    assert events == ["offsets", "source", "store"]
    assert worker.state == PipelineState.CLOSED


def test_unknown_operation_is_rejected() -> None:
    with pytest.raises(ConfigError):
        _worker([], operation="merge")


class _ClosingStore:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class _DiscoveryReader:
    instances: list["_DiscoveryReader"] = []

    def __init__(self, config: Any) -> None:
        self.config = config
        self.closed = False
        _DiscoveryReader.instances.append(self)

    def list_partitions(self, topic: str) -> list[int]:
        return [0, 1]

    def watermarks(self, topic: str, partition: int) -> tuple[int, int]:
        return (0, 0)

    def committed(self, topic: str, partition: int) -> tuple[int, str] | None:
        return None

    def commit(self, topic: str, partition: int, offset: int, metadata: str) -> None:
        return

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_backends(monkeypatch: pytest.MonkeyPatch) -> _ClosingStore:
    store = _ClosingStore()
    _DiscoveryReader.instances = []
    monkeypatch.setattr(worker_module, "build_cassandra_store", lambda config, table="user": store)
    monkeypatch.setattr(worker_module, "KafkaPartitionReader", _DiscoveryReader)
    return store


_ARGV = ["--brokers", "b1:9092", "--topic", "users", "--keyspace", "accounts"]


def test_build_worker_uses_discovered_partitions(fake_backends: _ClosingStore) -> None:
    worker = build_worker(load_consumer_config(_ARGV + ["--partition", "1"], environ={}))
    assert worker.partition == 1
    assert worker.state == PipelineState.INITIALIZING
    assert fake_backends.closed is False


def test_build_worker_missing_partition_releases_handles(fake_backends: _ClosingStore) -> None:
    config = load_consumer_config(_ARGV + ["--partition", "3"], environ={})
    with pytest.raises(ConfigError) as exc:
        build_worker(config)
    assert exc.value.code == "KAFKA_PARTITION_NOT_FOUND"
    assert fake_backends.closed is True
    assert _DiscoveryReader.instances[0].closed is True


def test_explicit_partition_list_skips_discovery(fake_backends: _ClosingStore) -> None:
    config = load_consumer_config(_ARGV + ["--partitions", "5,6", "--partition", "6"], environ={})
    assert build_worker(config).partition == 6


def test_main_exit_codes(fake_backends: _ClosingStore, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KAFKA_PEERS", "KAFKA_TOPICS", "CASSANDRA_KEYSPACE", "KAFKA_PARTITION", "KAFKA_PARTITIONS"):
        monkeypatch.delenv(name, raising=False)
    assert main(["--topic", "users"]) == EXIT_USAGE
    assert main(_ARGV + ["--partition", "9"]) == EXIT_UNAVAILABLE

    def _unreachable(config: Any, table: str = "user") -> Any:
        raise StoreError("CASSANDRA_CONNECT_FAILED", "no hosts available")

    monkeypatch.setattr(worker_module, "build_cassandra_store", _unreachable)
    assert main(_ARGV) == EXIT_UNAVAILABLE
