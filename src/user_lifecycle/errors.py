"""User lifecycle error taxonomy and helpers."""

from __future__ import annotations

import re


EXIT_USAGE = 64
EXIT_UNAVAILABLE = 69
EXIT_SOFTWARE = 70

_CODE_PREFIX = re.compile(r"^([A-Z][A-Z0-9_]*)(?::|$)")

# Library and runtime failures that can surface while handling one message.
_FOREIGN_CODES: tuple[tuple[type[BaseException], str], ...] = (
    (RecursionError, "PAYLOAD_TOO_DEEP"),
    (OverflowError, "NUMBER_OUT_OF_RANGE"),
    (UnicodeError, "PAYLOAD_NOT_UTF8"),
    (OSError, "IO_FAILED"),
)


class UserLifecycleError(RuntimeError):
    """Failure carrying a stable upper-case ``code`` and optional ``detail``."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        super().__init__(code, detail)
        self.code = code
        self.detail = detail

    def __str__(self) -> str:
        if not self.detail:
            return self.code
        return f"{self.code}:{self.detail}"


class ConfigError(UserLifecycleError):
    """Startup configuration is missing or unusable; ends the process."""

    def __init__(self, code: str, detail: str | None = None, *, exit_code: int = EXIT_UNAVAILABLE) -> None:
        super().__init__(code, detail)
        self.exit_code = exit_code


class DecodeError(UserLifecycleError):
    """Message payload is not a valid user envelope."""


class ValidationError(UserLifecycleError):
    """Decoded user is missing fields the operation requires."""


class MalformedNumberError(UserLifecycleError):
    """A present numeric field failed to parse or is out of range."""


class StoreError(UserLifecycleError):
    """Column store rejected or failed a write."""


class CheckpointCommitError(UserLifecycleError):
    """Offset commit failed; logged, never retried."""


def reason_code(exc: BaseException) -> str:
    """Code for log lines and message outcomes.

    Our own errors keep their code; known runtime failures map by type; a
    message that already starts with an upper-case code (``NO_HOSTS: ...``)
    yields that code. Anything else is ``UNEXPECTED_<TYPE>``.
    """
    if isinstance(exc, UserLifecycleError):
        return exc.code
    for kind, code in _FOREIGN_CODES:
        if isinstance(exc, kind):
            return code
    match = _CODE_PREFIX.match(str(exc).strip())
    if match:
        return match.group(1)
    return f"UNEXPECTED_{type(exc).__name__.upper()}"
