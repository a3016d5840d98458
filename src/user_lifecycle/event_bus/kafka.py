"""Kafka partition reader (explicit assignment, consumer-group offset commits)."""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any

from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition

from user_lifecycle.errors import CheckpointCommitError


logger = logging.getLogger("user_lifecycle.event_bus")
_client_logger = logging.getLogger("user_lifecycle.event_bus.kafka.client")


@dataclass(frozen=True)
class KafkaReaderConfig:
    bootstrap_servers: str
    group_id: str
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_username: str | None = None
    sasl_password: str | None = None
    client_id: str = "user-lifecycle-consumer"
    request_timeout_ms: int = 15000
    poll_timeout_ms: int = 500
    verbose: bool = False


@dataclass(frozen=True)
class PartitionMessage:
    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes | None
    timestamp_ms: int | None = None


def _strip_scheme(value: str) -> str:
    v = value.strip()
    for prefix in ("SASL_SSL://", "SASL_PLAINTEXT://", "PLAINTEXT://", "SSL://"):
        if v.upper().startswith(prefix):
            return v[len(prefix) :]
    return v


def _on_commit(err: Any, partitions: list[Any]) -> None:
    if err is None:
        return
    failure = CheckpointCommitError("KAFKA_COMMIT_FAILED", str(err)[:256])
    logger.warning(
        "Kafka offset commit failed offsets=%s detail=%s",
        ",".join(f"{tp.topic}:{tp.partition}@{tp.offset}" for tp in partitions or []),
        failure,
    )


def _consumer_conf(config: KafkaReaderConfig) -> dict[str, Any]:
    conf: dict[str, Any] = {
        "bootstrap.servers": config.bootstrap_servers,
        "security.protocol": config.security_protocol,
        "client.id": config.client_id,
        "group.id": config.group_id,
        "enable.auto.commit": False,
        "enable.auto.offset.store": False,
        "enable.partition.eof": False,
        "session.timeout.ms": max(6000, int(config.request_timeout_ms)),
        "on_commit": _on_commit,
    }
    if config.sasl_username and config.sasl_password:
        conf.update(
            {
                "sasl.mechanism": config.sasl_mechanism,
                "sasl.username": config.sasl_username,
                "sasl.password": config.sasl_password,
            }
        )
    if config.verbose:
        conf["debug"] = "consumer,cgrp,topic,fetch"
    return conf


class KafkaPartitionReader:
    def __init__(self, config: KafkaReaderConfig, *, consumer: Any | None = None) -> None:
        if not config.bootstrap_servers.strip():
            raise RuntimeError("KAFKA_BOOTSTRAP_SERVERS_MISSING")
        bootstrap = ",".join(
            _strip_scheme(item) for item in config.bootstrap_servers.split(",") if item.strip()
        )
        self.config = replace(config, bootstrap_servers=bootstrap)
        self._consumer = consumer if consumer is not None else Consumer(_consumer_conf(self.config), logger=_client_logger)
        self._assigned: TopicPartition | None = None

    @property
    def _timeout(self) -> float:
        return max(1.0, self.config.request_timeout_ms / 1000.0)

    def list_partitions(self, topic: str) -> list[int]:
        if not topic:
            return []
        try:
            metadata = self._consumer.list_topics(topic=topic, timeout=self._timeout)
            topic_meta = metadata.topics.get(topic)
            if topic_meta is None or topic_meta.error is not None:
                return []
            return sorted(int(partition) for partition in topic_meta.partitions.keys())
        except Exception as exc:
            logger.warning("Kafka list_partitions failed topic=%s detail=%s", topic, str(exc)[:256])
            return []

    def watermarks(self, topic: str, partition: int) -> tuple[int, int]:
        low, high = self._consumer.get_watermark_offsets(
            TopicPartition(topic, int(partition)),
            timeout=self._timeout,
            cached=False,
        )
        return int(low), int(high)

    def assign(self, topic: str, partition: int, offset: int) -> None:
        self._assigned = TopicPartition(topic, int(partition), int(offset))
        self._consumer.assign([self._assigned])
        logger.info("Kafka partition assigned topic=%s partition=%s offset=%s", topic, partition, offset)

    def poll(self) -> PartitionMessage | None:
        msg = self._consumer.poll(timeout=max(0.05, self.config.poll_timeout_ms / 1000.0))
        if msg is None:
            return None
        if msg.error():
            if msg.error().code() != KafkaError._PARTITION_EOF:
                logger.warning(
                    "Kafka poll failed topic=%s partition=%s detail=%s",
                    msg.topic(),
                    msg.partition(),
                    str(msg.error())[:256],
                )
            return None
        ts_type, ts_ms = msg.timestamp()
        return PartitionMessage(
            topic=str(msg.topic()),
            partition=int(msg.partition()),
            offset=int(msg.offset()),
            key=msg.key(),
            value=msg.value(),
            timestamp_ms=int(ts_ms) if ts_type and ts_ms and ts_ms > 0 else None,
        )

    def pause(self) -> None:
        if self._assigned is None:
            return
        try:
            self._consumer.pause([self._assigned])
        except KafkaException as exc:
            logger.warning("Kafka pause failed detail=%s", str(exc)[:256])

    def committed(self, topic: str, partition: int) -> tuple[int, str] | None:
        rows = self._consumer.committed([TopicPartition(topic, int(partition))], timeout=self._timeout)
        if not rows:
            return None
        row = rows[0]
        if row.error is not None:
            raise KafkaException(row.error)
        if int(row.offset) < 0:
            return None
        return int(row.offset), str(row.metadata or "")

    def commit(self, topic: str, partition: int, offset: int, metadata: str) -> None:
        self._consumer.commit(
            offsets=[TopicPartition(topic, int(partition), int(offset), metadata=metadata)],
            asynchronous=True,
        )

    def close(self) -> None:
        try:
            self._consumer.close()
        except Exception as exc:
            logger.warning("Kafka consumer close failed detail=%s", str(exc)[:256])
