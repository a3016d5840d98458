"""User entity contracts: envelope decoding, field presence, numeric normalization."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import enum
import json
import re
import time
from typing import Any, Mapping

from user_lifecycle.errors import DecodeError, MalformedNumberError, ValidationError


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_DECIMAL_PATTERN = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
# datetime range, 0001-01-01 to 9999-12-31T23:59:59.999 UTC
_TIMESTAMP_MIN_MS = -62135596800000
_TIMESTAMP_MAX_MS = 253402300799999

CREATION_REQUIRED_FIELDS = ("login", "password", "name", "birthdate")


class UserState(enum.IntFlag):
    NEW = 1
    EMAIL_VERIFIED = 2
    PHONE_VERIFIED = 4
    BANNED = 8
    REMOVED = 16


class _NumberLiteral(str):
    """Source text of a JSON number, kept verbatim until normalization."""


@dataclass(frozen=True)
class User:
    """One decoded account record.

    Every optional field is ``None`` when the message did not carry it. Empty
    strings decode to ``None``; an explicit empty list or object stays present.
    Numeric fields hold their source text and are parsed by
    :func:`to_insert_record`.
    """

    login: str | None = None
    password: str | None = None
    name: str | None = None
    birthdate: str | None = None
    avatar_urls: tuple[str, ...] | None = None
    social_codes: dict[str, str] | None = None
    emails: tuple[str, ...] | None = None
    phones: tuple[str, ...] | None = None
    created: str | None = None
    modified: str | None = None
    state: str | None = None
    latitude: str | None = None
    longitude: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "User":
        if not isinstance(payload, Mapping):
            raise DecodeError("USER_DATA_INVALID", "data must be an object")
        return cls(
            login=_string(payload.get("login"), "login"),
            password=_string(payload.get("password"), "password"),
            name=_string(payload.get("name"), "name"),
            birthdate=_numeric(payload.get("birthdate"), "birthdate"),
            avatar_urls=_string_list(payload.get("avatarUrls"), "avatarUrls"),
            social_codes=_string_map(payload.get("socialCodes"), "socialCodes"),
            emails=_string_list(payload.get("emails"), "emails"),
            phones=_string_list(payload.get("phones"), "phones"),
            created=_numeric(payload.get("created"), "created"),
            modified=_numeric(payload.get("modified"), "modified"),
            state=_numeric(payload.get("state"), "state"),
            latitude=_numeric(payload.get("latitude"), "latitude"),
            longitude=_numeric(payload.get("longitude"), "longitude"),
        )

    def summary(self) -> dict[str, Any]:
        """Present fields for log lines, with the password masked."""
        fields = {
            "login": self.login,
            "password": "***" if self.password is not None else None,
            "name": self.name,
            "birthdate": self.birthdate,
            "avatarUrls": list(self.avatar_urls) if self.avatar_urls is not None else None,
            "socialCodes": dict(self.social_codes) if self.social_codes is not None else None,
            "emails": list(self.emails) if self.emails is not None else None,
            "phones": list(self.phones) if self.phones is not None else None,
            "created": self.created,
            "modified": self.modified,
            "state": self.state,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }
        return {key: value for key, value in fields.items() if value is not None}


@dataclass(frozen=True)
class MessageEnvelope:
    version: int | None
    user: User


@dataclass(frozen=True)
class UserInsertRecord:
    login: str | None
    password: str | None
    name: str | None
    birthdate_ms: int | None
    avatar_urls: tuple[str, ...] | None
    social_codes: dict[str, str] | None
    emails: tuple[str, ...] | None
    phones: tuple[str, ...] | None
    created_ms: int
    modified_ms: int
    state: int
    latitude: float | None
    longitude: float | None


def decode_envelope(raw: bytes | str | None) -> MessageEnvelope:
    """Decode a broker payload into a message envelope.

    Raises ``DecodeError`` when the payload is not UTF-8 JSON, is not an
    object, or carries a field of the wrong JSON type.
    """
    if raw is None:
        raise DecodeError("ENVELOPE_EMPTY")
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        payload = json.loads(text, parse_int=_NumberLiteral, parse_float=_NumberLiteral)
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError("ENVELOPE_NOT_JSON", str(exc)[:256]) from exc
    except RecursionError:
        raise DecodeError("ENVELOPE_TOO_DEEP", "nesting exceeds the interpreter recursion limit") from None
    if not isinstance(payload, dict):
        raise DecodeError("ENVELOPE_NOT_OBJECT")
    version_text = _numeric(payload.get("version"), "version")
    version: int | None = None
    if version_text is not None:
        if not _INT_PATTERN.match(version_text):
            raise DecodeError("ENVELOPE_VERSION_INVALID", version_text[:64])
        version = int(version_text)
    data = payload.get("data")
    user = User() if data is None else User.from_payload(data)
    return MessageEnvelope(version=version, user=user)


def to_insert_record(user: User, *, now_ms: int) -> UserInsertRecord:
    """Coerce numeric text into typed values and apply insert defaults."""
    created = _parse_timestamp(user.created, "created")
    if created is None:
        created = now_ms
    modified = _parse_timestamp(user.modified, "modified")
    if modified is None:
        modified = created
    state = _parse_int(user.state, "state")
    return UserInsertRecord(
        login=user.login,
        password=user.password,
        name=user.name,
        birthdate_ms=_parse_timestamp(user.birthdate, "birthdate"),
        avatar_urls=user.avatar_urls,
        social_codes=user.social_codes,
        emails=user.emails,
        phones=user.phones,
        created_ms=created,
        modified_ms=modified,
        state=state if state is not None else 0,
        latitude=_parse_decimal(user.latitude, "latitude"),
        longitude=_parse_decimal(user.longitude, "longitude"),
    )


def ensure_creation_eligible(user: User) -> None:
    missing = [field_name for field_name in CREATION_REQUIRED_FIELDS if getattr(user, field_name) is None]
    if not user.emails:
        missing.append("emails")
    if missing:
        raise ValidationError("USER_CREATE_FIELDS_MISSING", ",".join(missing))


def ensure_addressable(user: User) -> None:
    if user.login is None:
        raise ValidationError("USER_LOGIN_MISSING")


def with_state(user: User, state: UserState) -> User:
    return replace(user, state=str(int(state)))


def with_default_state(user: User) -> User:
    if user.state is not None:
        return user
    return with_state(user, UserState.NEW)


def epoch_ms_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    try:
        return _EPOCH + timedelta(milliseconds=int(value))
    except OverflowError:
        raise MalformedNumberError("USER_NUMBER_OUT_OF_RANGE", f"timestamp={value}") from None


def now_ms() -> int:
    return int(time.time() * 1000)


def _string(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or isinstance(value, _NumberLiteral):
        raise DecodeError("USER_FIELD_TYPE", f"{field_name} must be a string")
    return value or None


def _numeric(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise DecodeError("USER_FIELD_TYPE", f"{field_name} must be a number or numeric string")
    text = str(value)
    return text or None


def _string_list(value: Any, field_name: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise DecodeError("USER_FIELD_TYPE", f"{field_name} must be a list of strings")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or isinstance(item, _NumberLiteral):
            raise DecodeError("USER_FIELD_TYPE", f"{field_name}[{index}] must be a string")
        items.append(str(item))
    return tuple(items)


def _string_map(value: Any, field_name: str) -> dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise DecodeError("USER_FIELD_TYPE", f"{field_name} must be an object of strings")
    codes: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(item, str) or isinstance(item, _NumberLiteral):
            raise DecodeError("USER_FIELD_TYPE", f"{field_name}.{key} must be a string")
        codes[str(key)] = str(item)
    return codes


def _parse_int(text: str | None, field_name: str) -> int | None:
    if text is None:
        return None
    if not _INT_PATTERN.match(text):
        raise MalformedNumberError("USER_NUMBER_MALFORMED", f"{field_name}={text[:64]!r}")
    value = int(text)
    if value < _INT64_MIN or value > _INT64_MAX:
        raise MalformedNumberError("USER_NUMBER_OUT_OF_RANGE", f"{field_name}={text[:64]!r}")
    return value


def _parse_decimal(text: str | None, field_name: str) -> float | None:
    if text is None:
        return None
    if not _DECIMAL_PATTERN.match(text):
        raise MalformedNumberError("USER_NUMBER_MALFORMED", f"{field_name}={text[:64]!r}")
    return float(text)


def _parse_timestamp(text: str | None, field_name: str) -> int | None:
    value = _parse_int(text, field_name)
    if value is not None and not _TIMESTAMP_MIN_MS <= value <= _TIMESTAMP_MAX_MS:
        raise MalformedNumberError("USER_NUMBER_OUT_OF_RANGE", f"{field_name}={text[:64]!r}")
    return value
