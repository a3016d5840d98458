"""User lifecycle consumer runtime worker CLI."""

from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
import enum
import json
import logging
import queue
import signal
import sys
import threading
from typing import Any, Protocol, Sequence

from user_lifecycle.errors import (
    EXIT_SOFTWARE,
    EXIT_UNAVAILABLE,
    EXIT_USAGE,
    ConfigError,
    DecodeError,
    MalformedNumberError,
    StoreError,
    ValidationError,
    reason_code,
)
from user_lifecycle.event_bus import KafkaPartitionReader, PartitionMessage
from user_lifecycle.logging_utils import configure_logging
from user_lifecycle.user_store import (
    User,
    build_cassandra_store,
    decode_envelope,
    ensure_addressable,
    ensure_creation_eligible,
    with_default_state,
)

from .checkpoints import PartitionOffsetManager, build_offset_store
from .config import (
    OPERATION_CREATE,
    OPERATION_REMOVE,
    OPERATIONS,
    UserConsumerConfig,
    build_parser,
    load_consumer_config,
)


logger = logging.getLogger("user_lifecycle.consumer.worker")

OUTCOME_PERSISTED = "PERSISTED"
OUTCOME_DECODE_REJECTED = "DECODE_REJECTED"
OUTCOME_VALIDATION_REJECTED = "VALIDATION_REJECTED"
OUTCOME_STORE_FAILED = "STORE_FAILED"

_QUEUE_WAIT_SECONDS = 0.5
_END_OF_STREAM = object()

_REQUIRED_COUNTERS = (
    "seen_total",
    "persisted_total",
    "decode_rejected_total",
    "validation_rejected_total",
    "store_failed_total",
    "commit_failed_total",
)


class PipelineState(str, enum.Enum):
    INITIALIZING = "INITIALIZING"
    RESOLVING_OFFSET = "RESOLVING_OFFSET"
    STREAMING = "STREAMING"
    DRAINING = "DRAINING"
    CLOSED = "CLOSED"


class PartitionSource(Protocol):
    def assign(self, topic: str, partition: int, offset: int) -> None:
        ...

    def poll(self) -> PartitionMessage | None:
        ...

    def pause(self) -> None:
        ...

    def close(self) -> None:
        ...


class UserGateway(Protocol):
    def insert(self, user: User) -> None:
        ...

    def update(self, user: User) -> bool:
        ...

    def remove(self, user: User) -> bool:
        ...

    def close(self) -> None:
        ...


@dataclass
class UserEventRunMetrics:
    counters: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def bump(self, key: str, delta: int = 1) -> None:
        if key not in self.counters:
            raise ValueError(f"unsupported metric counter: {key}")
        self.counters[key] = int(self.counters.get(key, 0)) + int(delta)

    def snapshot(self) -> dict[str, int]:
        return dict(self.counters)


@dataclass(frozen=True)
class MessageResult:
    offset: int
    outcome: str
    reason: str | None
    committed: bool


class UserEventWorker:
    """Single-partition pipeline.

    A forwarding thread polls the broker into a bounded queue; a processing
    thread drains the queue in delivery order, persists each message and
    commits ``offset + 1`` whatever the outcome. ``request_stop`` halts polling;
    everything already queued is processed and committed before ``run``
    closes the handles and returns.
    """

    def __init__(
        self,
        *,
        topic: str,
        partition: int,
        operation: str,
        source: PartitionSource,
        offsets: PartitionOffsetManager,
        store: UserGateway,
        buffer_size: int = 1,
    ) -> None:
        if operation not in OPERATIONS:
            raise ConfigError("USER_OPERATION_INVALID", str(operation))
        self.topic = topic
        self.partition = int(partition)
        self.operation = operation
        self.source = source
        self.offsets = offsets
        self.store = store
        self.metrics = UserEventRunMetrics()
        self.start_offset: int | None = None
        self._state = PipelineState.INITIALIZING
        self._state_lock = threading.RLock()
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max(1, int(buffer_size)))
        self._stop = threading.Event()
        self._processor: threading.Thread | None = None
        self._failure: BaseException | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    def request_stop(self) -> None:
        with self._state_lock:
            if self._stop.is_set():
                return
            self._stop.set()
            if self._state == PipelineState.STREAMING:
                self._state = PipelineState.DRAINING
        logger.info("Initiating shutdown of consumer topic=%s partition=%s", self.topic, self.partition)

    def run(self) -> dict[str, Any]:
        try:
            self._set_state(PipelineState.RESOLVING_OFFSET)
            self.start_offset = self.offsets.resolve_start()
            logger.info("Found offset topic=%s partition=%s offset=%s", self.topic, self.partition, self.start_offset)
            self.source.assign(self.topic, self.partition, self.start_offset)
            self._set_state(PipelineState.STREAMING)
            self._processor = threading.Thread(
                target=self._process_queue,
                name=f"user-processor-{self.partition}",
            )
            forwarder = threading.Thread(
                target=self._forward,
                name=f"user-forwarder-{self.partition}",
            )
            self._processor.start()
            forwarder.start()
            _join(forwarder)
            _join(self._processor)
        finally:
            self._close()
        if self._failure is not None:
            raise self._failure
        summary = {
            "topic": self.topic,
            "partition": self.partition,
            "operation": self.operation,
            "start_offset": self.start_offset,
            "last_committed_offset": self.offsets.last_committed,
            "metrics": self.metrics.snapshot(),
        }
        logger.info("Done consuming topic=%s summary=%s", self.topic, json.dumps(summary, sort_keys=True))
        return summary

    def process_message(self, message: PartitionMessage) -> MessageResult:
        self.metrics.bump("seen_total")
        logger.info(
            "User event received topic=%s partition=%s offset=%s key=%s value=%s",
            message.topic,
            message.partition,
            message.offset,
            _text(message.key),
            _text(message.value),
        )
        try:
            outcome, reason = self._handle(message)
        except Exception as exc:
            # one poisoned message must not block the partition
            self.metrics.bump("store_failed_total")
            outcome, reason = OUTCOME_STORE_FAILED, reason_code(exc)
            logger.exception("User event failed offset=%s reason=%s", message.offset, reason)
        committed = self.offsets.commit(message.offset + 1)
        if not committed:
            self.metrics.bump("commit_failed_total")
        logger.info(
            "User event done offset=%s outcome=%s reason=%s next_offset=%s committed=%s",
            message.offset,
            outcome,
            reason,
            message.offset + 1,
            committed,
        )
        return MessageResult(offset=message.offset, outcome=outcome, reason=reason, committed=committed)

    def _handle(self, message: PartitionMessage) -> tuple[str, str | None]:
        try:
            envelope = decode_envelope(message.value)
        except DecodeError as exc:
            self.metrics.bump("decode_rejected_total")
            logger.warning("User event decode failed offset=%s detail=%s", message.offset, exc)
            return OUTCOME_DECODE_REJECTED, exc.code
        user = envelope.user
        logger.info(
            "User event decoded offset=%s version=%s user=%s",
            message.offset,
            envelope.version,
            json.dumps(user.summary(), sort_keys=True, ensure_ascii=True),
        )
        try:
            if self.operation == OPERATION_CREATE:
                ensure_creation_eligible(user)
                self.store.insert(with_default_state(user))
            elif self.operation == OPERATION_REMOVE:
                ensure_addressable(user)
                self.store.remove(user)
            else:
                ensure_addressable(user)
                self.store.update(user)
        except ValidationError as exc:
            self.metrics.bump("validation_rejected_total")
            logger.warning("User event rejected offset=%s login=%s detail=%s", message.offset, user.login, exc)
            return OUTCOME_VALIDATION_REJECTED, exc.code
        except (MalformedNumberError, StoreError) as exc:
            # no retry queue: the message is dropped once its offset is committed
            self.metrics.bump("store_failed_total")
            logger.error("Failed to %s user offset=%s login=%s detail=%s", self.operation, message.offset, user.login, exc)
            return OUTCOME_STORE_FAILED, exc.code
        self.metrics.bump("persisted_total")
        return OUTCOME_PERSISTED, None

    def _forward(self) -> None:
        try:
            while not self._stop.is_set():
                message = self.source.poll()
                if message is None:
                    continue
                if not self._enqueue(message):
                    break
        except Exception:
            logger.exception("Broker delivery failed topic=%s partition=%s", self.topic, self.partition)
            self.request_stop()
        finally:
            self.source.pause()
            self._enqueue(_END_OF_STREAM)

    def _enqueue(self, item: Any) -> bool:
        while True:
            try:
                self._queue.put(item, timeout=_QUEUE_WAIT_SECONDS)
                return True
            except queue.Full:
                if self._processor is None or not self._processor.is_alive():
                    return False

    def _process_queue(self) -> None:
        try:
            while True:
                item = self._queue.get()
                if item is _END_OF_STREAM:
                    return
                self.process_message(item)
        except BaseException as exc:
            self._failure = exc
            logger.exception("User event processing crashed topic=%s partition=%s", self.topic, self.partition)
            self.request_stop()

    def _close(self) -> None:
        self._set_state(PipelineState.DRAINING)
        # reverse of acquisition: store session, broker consumer, offset manager
        for name, closer in (
            ("offset manager", self.offsets.close),
            ("consumer", self.source.close),
            ("store session", self.store.close),
        ):
            try:
                closer()
            except Exception:
                logger.exception("Failed to close %s", name)
        self._set_state(PipelineState.CLOSED)

    def _set_state(self, state: PipelineState) -> None:
        with self._state_lock:
            self._state = state


def build_worker(config: UserConsumerConfig) -> UserEventWorker:
    with ExitStack() as stack:
        store = build_cassandra_store(config.cassandra, table=config.table)
        stack.callback(store.close)
        reader = KafkaPartitionReader(config.kafka_reader_config())
        stack.callback(reader.close)

        if config.partitions is None:
            partitions = reader.list_partitions(config.topic)
        else:
            partitions = list(config.partitions)
        for partition in partitions:
            logger.info("Found partition topic=%s partition=%s", config.topic, partition)
        if config.partition not in partitions:
            raise ConfigError("KAFKA_PARTITION_NOT_FOUND", f"{config.topic}:{config.partition}")

        offsets = PartitionOffsetManager(
            build_offset_store(config.checkpoint_locator, group_backend=reader),
            topic=config.topic,
            partition=config.partition,
            group_id=config.group_id,
            initial_position=config.initial_offset,
            watermarks=reader.watermarks,
        )
        worker = UserEventWorker(
            topic=config.topic,
            partition=config.partition,
            operation=config.operation,
            source=reader,
            offsets=offsets,
            store=store,
            buffer_size=config.buffer_size,
        )
        stack.pop_all()
    return worker


def _install_signal_handlers(worker: UserEventWorker) -> None:
    def _handler(signum: int, frame: Any) -> None:
        worker.request_stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _join(thread: threading.Thread) -> None:
    while thread.is_alive():
        thread.join(timeout=_QUEUE_WAIT_SECONDS)


def _text(value: bytes | None) -> str:
    if value is None:
        return ""
    return value.decode("utf-8", errors="replace")


def _print_error(exc: BaseException, *, usage: bool = False) -> None:
    print(f"ERROR: {exc}", file=sys.stderr)
    print(file=sys.stderr)
    if usage:
        print("Available command line options:", file=sys.stderr)
        build_parser().print_help(sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        config = load_consumer_config(argv)
    except ConfigError as exc:
        _print_error(exc, usage=exc.exit_code == EXIT_USAGE)
        return exc.exit_code

    configure_logging(verbose=config.verbose)
    try:
        worker = build_worker(config)
    except ConfigError as exc:
        _print_error(exc, usage=exc.exit_code == EXIT_USAGE)
        return exc.exit_code
    except Exception as exc:
        logger.error("User consumer startup failed reason=%s", reason_code(exc))
        _print_error(exc)
        return EXIT_UNAVAILABLE

    _install_signal_handlers(worker)
    try:
        worker.run()
    except Exception:
        logger.exception("User consumer stopped on failure topic=%s", config.topic)
        return EXIT_UNAVAILABLE if worker.start_offset is None else EXIT_SOFTWARE
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
