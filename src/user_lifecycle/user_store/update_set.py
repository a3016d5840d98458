"""Partial-update write-set builder for the user table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .contracts import User, epoch_ms_to_datetime, to_insert_record


COLUMN_PREFIX = "u_"
KEY_COLUMN = f"{COLUMN_PREFIX}login"

# Fixed vocabulary of updatable columns; only these names are ever interpolated.
UPDATABLE_COLUMNS = frozenset(
    {
        "avatarUrl",
        "birthdate",
        "email",
        "modified",
        "name",
        "password",
        "phone",
        "social_code",
        "state",
    }
)


@dataclass(frozen=True)
class UpdateStatement:
    cql: str
    parameters: tuple[Any, ...]
    columns: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "cql": self.cql,
            "columns": list(self.columns),
            "parameters": list(self.parameters),
        }


def collect_update_fields(user: User, *, now_ms: int) -> dict[str, Any]:
    """Return the column -> value write-set for a partial user.

    Strings and numeric text count when present; sequences and maps count when
    not ``None``, so an explicit empty list clears the column.
    """
    record = to_insert_record(user, now_ms=now_ms)
    fields: dict[str, Any] = {}
    if user.password is not None:
        fields["password"] = record.password
    if user.name is not None:
        fields["name"] = record.name
    if user.birthdate is not None:
        fields["birthdate"] = epoch_ms_to_datetime(record.birthdate_ms)
    if user.avatar_urls is not None:
        fields["avatarUrl"] = list(user.avatar_urls)
    if user.social_codes is not None:
        fields["social_code"] = dict(user.social_codes)
    if user.emails is not None:
        fields["email"] = list(user.emails)
    if user.phones is not None:
        fields["phone"] = list(user.phones)
    if user.state is not None:
        fields["state"] = record.state
    fields["modified"] = epoch_ms_to_datetime(now_ms)
    return fields


def render_update(fields: dict[str, Any], *, login: str | None, table: str = "user") -> UpdateStatement | None:
    if not fields:
        return None
    unknown = sorted(set(fields) - UPDATABLE_COLUMNS)
    if unknown:
        raise ValueError(f"unsupported update columns: {unknown!r}")
    columns = tuple(sorted(fields))
    assignments = ", ".join(f"{COLUMN_PREFIX}{name}=?" for name in columns)
    cql = f"UPDATE {table} SET {assignments} WHERE {KEY_COLUMN}=?"
    parameters = tuple(fields[name] for name in columns) + (login,)
    return UpdateStatement(cql=cql, parameters=parameters, columns=columns)


def build_update_statement(user: User, *, now_ms: int, table: str = "user") -> UpdateStatement | None:
    """Build the parameterized partial update for ``user``; ``None`` means nothing to write."""
    fields = collect_update_fields(user, now_ms=now_ms)
    return render_update(fields, login=user.login, table=table)
