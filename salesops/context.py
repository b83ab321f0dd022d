from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
session_key_var: ContextVar[str | None] = ContextVar("session_key", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_session_key(value: str | None) -> Token[str | None]:
    return session_key_var.set(value)


def reset_session_key(token: Token[str | None]) -> None:
    session_key_var.reset(token)


def get_session_key() -> str | None:
    return session_key_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "session_key": get_session_key()}
