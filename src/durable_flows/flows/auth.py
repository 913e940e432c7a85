"""Caller identity for flow invocations.

An :class:`AuthContext` is derived per request from caller-supplied
credentials and is never persisted. A flow's auth policy receives it together
with the raw input before anything runs.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field

from durable_flows.errors import AuthError


class AuthContext(BaseModel):
    subject: str | None = None
    token: str | None = None
    claims: dict[str, Any] = Field(default_factory=dict)


AuthPolicy = Callable[[AuthContext | None, Any], bool | None | Awaitable[bool | None]]
AuthDecoder = Callable[[Any], AuthContext | None]

_BEARER = "bearer "


def decode_credential(credential: Any) -> AuthContext | None:
    """Default credential decoder.

    - ``None`` or an empty string means an anonymous caller
    - a string is an opaque token (an ``Authorization`` header value is accepted)
    - a mapping is a set of already-verified claims (``sub`` becomes the subject)

    Raises:
        AuthError: If the credential has an unsupported shape.
    """

    if credential is None:
        return None
    if isinstance(credential, str):
        token = credential.strip()
        if token.lower().startswith(_BEARER):
            token = token[len(_BEARER) :].strip()
        return AuthContext(token=token) if token else None
    if isinstance(credential, dict):
        subject = credential.get("sub") or credential.get("subject")
        return AuthContext(
            subject=str(subject) if subject is not None else None,
            claims=dict(credential),
        )
    raise AuthError(
        "Unsupported credential format", details={"type": type(credential).__name__}
    )


def require_authenticated(auth: AuthContext | None, _input: Any) -> bool:
    """Policy: any decoded credential is enough."""

    return auth is not None


def require_token(tokens: Iterable[str]) -> AuthPolicy:
    """Policy factory: the caller's token must be one of ``tokens``."""

    allowed = frozenset(tokens)

    def _policy(auth: AuthContext | None, _input: Any) -> bool:
        return auth is not None and auth.token is not None and auth.token in allowed

    return _policy


def require_claim(name: str, value: Any = True) -> AuthPolicy:
    """Policy factory: the caller must carry claim ``name`` equal to ``value``."""

    def _policy(auth: AuthContext | None, _input: Any) -> None:
        if auth is None:
            raise AuthError("Authentication required")
        if auth.claims.get(name) != value:
            raise AuthError(f"Missing required claim '{name}'", details={"claim": name})

    return _policy
