"""User entity model, partial-update builder and Cassandra gateway."""

from .contracts import (
    MessageEnvelope,
    User,
    UserInsertRecord,
    UserState,
    decode_envelope,
    ensure_addressable,
    ensure_creation_eligible,
    to_insert_record,
    with_default_state,
    with_state,
)
from .store import CassandraConfig, CassandraUserStore, build_cassandra_store
from .update_set import UpdateStatement, build_update_statement

__all__ = [
    "CassandraConfig",
    "CassandraUserStore",
    "MessageEnvelope",
    "UpdateStatement",
    "User",
    "UserInsertRecord",
    "UserState",
    "build_cassandra_store",
    "build_update_statement",
    "decode_envelope",
    "ensure_addressable",
    "ensure_creation_eligible",
    "to_insert_record",
    "with_default_state",
    "with_state",
]
