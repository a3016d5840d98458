"""User consumer configuration: flags, environment and optional YAML profile."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import os
from pathlib import Path
import re
from typing import Any, Mapping, Sequence

import yaml

from user_lifecycle.errors import EXIT_UNAVAILABLE, EXIT_USAGE, ConfigError
from user_lifecycle.event_bus import KafkaReaderConfig
from user_lifecycle.user_store.store import CassandraConfig, parse_consistency

from .checkpoints import INITIAL_POSITIONS, KAFKA_LOCATOR, OFFSET_NEWEST


_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")
_TRUE_VALUES = {"1", "true", "yes", "on"}

OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_REMOVE = "remove"
OPERATIONS = (OPERATION_CREATE, OPERATION_UPDATE, OPERATION_REMOVE)


@dataclass(frozen=True)
class UserConsumerConfig:
    brokers: tuple[str, ...]
    topic: str
    partitions: tuple[int, ...] | None
    partition: int
    initial_offset: str
    group_id: str
    operation: str
    buffer_size: int
    poll_timeout_ms: int
    security_protocol: str
    sasl_mechanism: str
    sasl_username: str | None
    sasl_password: str | None
    checkpoint_locator: str
    cassandra: CassandraConfig
    table: str
    verbose: bool
    profile_path: Path | None = None

    def kafka_reader_config(self) -> KafkaReaderConfig:
        return KafkaReaderConfig(
            bootstrap_servers=",".join(self.brokers),
            group_id=self.group_id,
            security_protocol=self.security_protocol,
            sasl_mechanism=self.sasl_mechanism,
            sasl_username=self.sasl_username,
            sasl_password=self.sasl_password,
            client_id=f"user-lifecycle-{self.operation}",
            request_timeout_ms=max(1000, self.cassandra.connect_timeout_ms),
            poll_timeout_ms=self.poll_timeout_ms,
            verbose=self.verbose,
        )


class _UsageParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ConfigError("USAGE_INVALID", message, exit_code=EXIT_USAGE)


def build_parser() -> argparse.ArgumentParser:
    parser = _UsageParser(description="Consume user lifecycle events from Kafka into Cassandra")
    parser.add_argument("--profile", default=None, help="Optional YAML profile with a user_consumer section")
    parser.add_argument("--brokers", default=None, help="Comma separated Kafka brokers (KAFKA_PEERS)")
    parser.add_argument("--topic", default=None, help="Topic to consume (KAFKA_TOPICS)")
    parser.add_argument("--partitions", default=None, help="'all' or comma separated partitions to discover")
    parser.add_argument("--partition", default=None, help="Partition to consume (KAFKA_PARTITION)")
    parser.add_argument("--offset", default=None, help="Start policy without a checkpoint: oldest or newest")
    parser.add_argument("--group", default=None, help="Consumer group id (KAFKA_CONSUMER_GROUP)")
    parser.add_argument("--security-protocol", default=None, help="Kafka security.protocol")
    parser.add_argument("--operation", default=None, help="create, update or remove")
    parser.add_argument("--buffer-size", default=None, help="Processing queue capacity")
    parser.add_argument("--poll-timeout-ms", default=None, help="Broker poll timeout in milliseconds")
    parser.add_argument("--checkpoints", default=None, help="'kafka', a SQLite path or a Postgres DSN")
    parser.add_argument("--cassandra-peers", default=None, help="Comma separated Cassandra contact points")
    parser.add_argument("--keyspace", default=None, help="Cassandra keyspace")
    parser.add_argument("--table", default=None, help="Cassandra table")
    parser.add_argument("--consistency", default=None, help="Cassandra consistency level")
    parser.add_argument("--protocol-version", default=None, help="Cassandra native protocol version")
    parser.add_argument("--connect-timeout-ms", default=None, help="Cassandra connect timeout in milliseconds")
    parser.add_argument("--cassandra-ca", default=None, help="CA bundle enabling TLS to Cassandra")
    parser.add_argument("--verbose", action="store_true", default=None, help="Debug logging incl. client libraries")
    return parser


def load_consumer_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> UserConsumerConfig:
    args = build_parser().parse_args(argv)
    env = os.environ if environ is None else environ
    profile_path = Path(args.profile) if args.profile else None
    profile = _load_profile(profile_path, env)

    def pick(flag_value: Any, env_name: str | None, profile_key: str, default: Any = None) -> Any:
        for candidate in (
            flag_value,
            env.get(env_name) if env_name else None,
            _env(profile.get(profile_key), env),
        ):
            if candidate is not None and str(candidate).strip() != "":
                return candidate
        return default

    brokers = _split(pick(args.brokers, "KAFKA_PEERS", "brokers"))
    if not brokers:
        raise ConfigError(
            "KAFKA_BROKERS_MISSING",
            "provide --brokers as a comma-separated list, or set KAFKA_PEERS",
            exit_code=EXIT_USAGE,
        )
    topic = str(pick(args.topic, "KAFKA_TOPICS", "topic", "")).strip()
    if not topic:
        raise ConfigError("KAFKA_TOPIC_MISSING", "--topic is required", exit_code=EXIT_USAGE)
    initial_offset = str(pick(args.offset, "KAFKA_OFFSET", "offset", OFFSET_NEWEST)).strip().lower()
    if initial_offset not in INITIAL_POSITIONS:
        raise ConfigError("KAFKA_OFFSET_INVALID", "--offset should be oldest or newest", exit_code=EXIT_USAGE)
    operation = str(pick(args.operation, "USER_OPERATION", "operation", OPERATION_CREATE)).strip().lower()
    if operation not in OPERATIONS:
        raise ConfigError("USER_OPERATION_INVALID", f"--operation should be one of {', '.join(OPERATIONS)}", exit_code=EXIT_USAGE)
    keyspace = str(pick(args.keyspace, "CASSANDRA_KEYSPACE", "keyspace", "")).strip()
    if not keyspace:
        raise ConfigError("CASSANDRA_KEYSPACE_MISSING", "--keyspace is required", exit_code=EXIT_USAGE)

    consistency = str(pick(args.consistency, "CASSANDRA_CONSISTENCY", "consistency", "ONE")).strip().upper()
    parse_consistency(consistency)

    cassandra = CassandraConfig(
        contact_points=_split(pick(args.cassandra_peers, "CASSANDRA_PEERS", "cassandra_peers", "127.0.0.1")),
        keyspace=keyspace,
        consistency=consistency,
        protocol_version=_int_setting(
            pick(args.protocol_version, "CASSANDRA_PROTOCOL_VERSION", "protocol_version", 4),
            "CASSANDRA_PROTOCOL_VERSION",
            minimum=1,
        ),
        connect_timeout_ms=_int_setting(
            pick(args.connect_timeout_ms, "CASSANDRA_CONNECTION_TIMEOUT", "connect_timeout_ms", 5000),
            "CASSANDRA_CONNECTION_TIMEOUT",
            minimum=1,
        ),
        ssl_ca_path=_none_if_blank(pick(args.cassandra_ca, "CASSANDRA_SSL_CA", "cassandra_ca")),
    )
    verbose_value = pick(args.verbose, "USER_CONSUMER_VERBOSE", "verbose", False)
    return UserConsumerConfig(
        brokers=brokers,
        topic=topic,
        partitions=_partitions(pick(args.partitions, "KAFKA_PARTITIONS", "partitions", "all")),
        partition=_int_setting(pick(args.partition, "KAFKA_PARTITION", "partition", 0), "KAFKA_PARTITION", minimum=0),
        initial_offset=initial_offset,
        group_id=str(pick(args.group, "KAFKA_CONSUMER_GROUP", "group_id", "user-lifecycle")).strip(),
        operation=operation,
        buffer_size=_int_setting(pick(args.buffer_size, "KAFKA_BUFFER_SIZE", "buffer_size", 1), "KAFKA_BUFFER_SIZE", minimum=1),
        poll_timeout_ms=_int_setting(
            pick(args.poll_timeout_ms, "KAFKA_POLL_TIMEOUT_MS", "poll_timeout_ms", 500),
            "KAFKA_POLL_TIMEOUT_MS",
            minimum=1,
        ),
        security_protocol=str(pick(args.security_protocol, "KAFKA_SECURITY_PROTOCOL", "security_protocol", "PLAINTEXT")).strip().upper(),
        sasl_mechanism=str(pick(None, "KAFKA_SASL_MECHANISM", "sasl_mechanism", "PLAIN")).strip(),
        sasl_username=_none_if_blank(pick(None, "KAFKA_SASL_USERNAME", "sasl_username")),
        sasl_password=_none_if_blank(pick(None, "KAFKA_SASL_PASSWORD", "sasl_password")),
        checkpoint_locator=str(pick(args.checkpoints, "USER_CHECKPOINT_LOCATOR", "checkpoints", KAFKA_LOCATOR)).strip(),
        cassandra=cassandra,
        table=str(pick(args.table, "CASSANDRA_TABLE", "table", "user")).strip(),
        verbose=verbose_value is True or str(verbose_value).strip().lower() in _TRUE_VALUES,
        profile_path=profile_path,
    )


def _load_profile(path: Path | None, env: Mapping[str, str]) -> dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise ConfigError("USER_CONSUMER_PROFILE_MISSING", str(path), exit_code=EXIT_USAGE)
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError("USER_CONSUMER_PROFILE_UNREADABLE", f"{path}: {exc}"[:256], exit_code=EXIT_USAGE) from exc
    except yaml.YAMLError as exc:
        raise ConfigError("USER_CONSUMER_PROFILE_INVALID", f"{path}: {exc}"[:256], exit_code=EXIT_USAGE) from exc
    if not isinstance(payload, Mapping):
        raise ConfigError("USER_CONSUMER_PROFILE_INVALID", str(path), exit_code=EXIT_USAGE)
    section = payload.get("user_consumer")
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise ConfigError("USER_CONSUMER_PROFILE_INVALID", "user_consumer must be a mapping", exit_code=EXIT_USAGE)
    return dict(section)


def _env(value: Any, env: Mapping[str, str]) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return env.get(match.group(1)) or match.group(2) or ""


def _split(value: Any) -> tuple[str, ...]:
    if value is None:
        return tuple()
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item.strip())


def _partitions(value: Any) -> tuple[int, ...] | None:
    if isinstance(value, str) and value.strip().lower() == "all":
        return None
    parsed: list[int] = []
    for item in _split(value):
        parsed.append(_int_setting(item, "KAFKA_PARTITIONS", minimum=0))
    return tuple(parsed) or None


def _int_setting(value: Any, name: str, *, minimum: int) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError("CONFIG_NUMBER_INVALID", f"{name}={value!r}", exit_code=EXIT_UNAVAILABLE) from None
    if number < minimum:
        raise ConfigError("CONFIG_NUMBER_INVALID", f"{name} must be >= {minimum}", exit_code=EXIT_UNAVAILABLE)
    return number


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
