"""Cassandra persistence gateway for user rows."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import ssl
from typing import Any, Callable, Protocol

from cassandra import ConsistencyLevel

from user_lifecycle.errors import ConfigError, StoreError

from .contracts import User, UserState, epoch_ms_to_datetime, now_ms, to_insert_record, with_state
from .update_set import COLUMN_PREFIX, UpdateStatement, build_update_statement


logger = logging.getLogger("user_lifecycle.user_store")
_TABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?$")

INSERT_COLUMNS = (
    "login",
    "password",
    "name",
    "birthdate",
    "avatarUrl",
    "social_code",
    "email",
    "phone",
    "created",
    "modified",
    "state",
)


class CqlSession(Protocol):
    def prepare(self, query: str) -> Any:
        ...

    def execute(self, query: Any, parameters: Any = None) -> Any:
        ...


@dataclass(frozen=True)
class CassandraConfig:
    contact_points: tuple[str, ...]
    keyspace: str
    consistency: str = "ONE"
    protocol_version: int = 4
    connect_timeout_ms: int = 5000
    ssl_ca_path: str | None = None


class CassandraUserStore:
    def __init__(
        self,
        session: CqlSession,
        *,
        table: str = "user",
        clock: Callable[[], int] = now_ms,
        cluster: Any | None = None,
    ) -> None:
        if not _TABLE_PATTERN.match(str(table or "")):
            raise ConfigError("CASSANDRA_TABLE_INVALID", str(table)[:64])
        self.table = table
        self._session = session
        self._cluster = cluster
        self._clock = clock
        self._prepared: dict[str, Any] = {}
        columns = ", ".join(f"{COLUMN_PREFIX}{name}" for name in INSERT_COLUMNS)
        placeholders = ", ".join("?" for _ in INSERT_COLUMNS)
        self._insert_cql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"

    def insert(self, user: User) -> None:
        record = to_insert_record(user, now_ms=self._clock())
        parameters = (
            record.login,
            record.password,
            record.name,
            epoch_ms_to_datetime(record.birthdate_ms),
            list(record.avatar_urls) if record.avatar_urls is not None else None,
            dict(record.social_codes) if record.social_codes is not None else None,
            list(record.emails) if record.emails is not None else None,
            list(record.phones) if record.phones is not None else None,
            epoch_ms_to_datetime(record.created_ms),
            epoch_ms_to_datetime(record.modified_ms),
            record.state,
        )
        self._execute(self._insert_cql, parameters, operation="insert")
        logger.info("User inserted login=%s state=%s", record.login, record.state)

    def update(self, user: User) -> bool:
        statement = self.update_statement(user)
        if statement is None:
            logger.info("User update skipped login=%s (empty write-set)", user.login)
            return False
        self._execute(statement.cql, statement.parameters, operation="update")
        logger.info("User updated login=%s columns=%s", user.login, ",".join(statement.columns))
        return True

    def remove(self, user: User) -> bool:
        return self.update(with_state(user, UserState.REMOVED))

    def update_statement(self, user: User) -> UpdateStatement | None:
        return build_update_statement(user, now_ms=self._clock(), table=self.table)

    def close(self) -> None:
        if self._cluster is not None:
            self._cluster.shutdown()
            return
        shutdown = getattr(self._session, "shutdown", None)
        if callable(shutdown):
            shutdown()

    def _execute(self, cql: str, parameters: tuple[Any, ...], *, operation: str) -> None:
        try:
            prepared = self._prepared.get(cql)
            if prepared is None:
                prepared = self._session.prepare(cql)
                self._prepared[cql] = prepared
            self._session.execute(prepared, parameters)
        except Exception as exc:
            raise StoreError(f"USER_{operation.upper()}_FAILED", str(exc)[:256]) from exc


def parse_consistency(value: str | None) -> int:
    name = str(value or "ONE").strip().upper()
    level = ConsistencyLevel.name_to_value.get(name)
    if level is None:
        raise ConfigError("CASSANDRA_CONSISTENCY_INVALID", name)
    return level


def build_cassandra_store(config: CassandraConfig, *, table: str = "user") -> CassandraUserStore:
    """Connect to the cluster and return a store that owns the session."""
    # cassandra.cluster resolves a connection reactor on import
    from cassandra.cluster import EXEC_PROFILE_DEFAULT, Cluster, ExecutionProfile

    profile = ExecutionProfile(
        consistency_level=parse_consistency(config.consistency),
        request_timeout=max(1.0, config.connect_timeout_ms / 1000.0),
    )
    ssl_context = None
    if config.ssl_ca_path:
        ssl_context = ssl.create_default_context(cafile=config.ssl_ca_path)
    cluster = Cluster(
        contact_points=list(config.contact_points),
        protocol_version=int(config.protocol_version),
        connect_timeout=max(1.0, config.connect_timeout_ms / 1000.0),
        execution_profiles={EXEC_PROFILE_DEFAULT: profile},
        ssl_context=ssl_context,
    )
    try:
        session = cluster.connect(config.keyspace)
    except Exception as exc:
        cluster.shutdown()
        raise StoreError("CASSANDRA_CONNECT_FAILED", str(exc)[:256]) from exc
    logger.info(
        "Cassandra session ready contact_points=%s keyspace=%s consistency=%s protocol=%s",
        ",".join(config.contact_points),
        config.keyspace,
        config.consistency,
        config.protocol_version,
    )
    return CassandraUserStore(session, table=table, cluster=cluster)
