"""Correlation ID propagation for request and cache tracing."""

import uuid
from contextvars import ContextVar, Token

# Survives awaits and asyncio.to_thread hops within one request
correlation_id_var: ContextVar[str] = ContextVar("fleetly_correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def current_correlation_id() -> str:
    return correlation_id_var.get()


def bind_correlation_id(cid: str) -> Token[str]:
    """Bind *cid* to the running context; keep the token to unbind later."""
    return correlation_id_var.set(cid)


def unbind_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)
