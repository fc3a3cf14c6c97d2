"""
Request-scoped context propagation.

A value placed in a scope is visible to every coroutine and task started
inside that scope, and to nothing else. Concurrent requests interleaving on
the same event loop each see their own value.

Example:
    async def handler(request):
        context = AuthContext(token=token, claims=claims, is_authenticated=True)
        return await run_in_context(context, process, request)

    async def some_tool():
        claims = get_token_claims()  # no argument threading required
"""

from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from typing import Any, Generic, ParamSpec, TypeVar

__all__ = [
    "AuthContext",
    "ContextPropagator",
    "auth_context",
    "current_context",
    "get_session_id",
    "get_token",
    "get_token_claims",
    "is_authenticated",
    "run_in_context",
]

T = TypeVar("T")
R = TypeVar("R")
P = ParamSpec("P")


class ContextPropagator(Generic[T]):
    """Carries one value along the asynchronous call chain of a scope."""

    __slots__ = ("_var",)

    def __init__(self, name: str) -> None:
        self._var: ContextVar[T | None] = ContextVar(name, default=None)

    def current(self) -> T | None:
        """Return the value of the innermost enclosing scope, or None outside any scope."""
        return self._var.get()

    @contextmanager
    def scope(self, value: T) -> Iterator[T]:
        token = self._var.set(value)
        try:
            yield value
        finally:
            self._var.reset(token)

    async def run(self, value: T, operation: Callable[P, Awaitable[R]], *args: P.args, **kwargs: P.kwargs) -> R:
        """Await ``operation`` with ``value`` as the current context."""
        with self.scope(value):
            return await operation(*args, **kwargs)


@dataclass(frozen=True, slots=True, kw_only=True)
class AuthContext:
    """Authentication state of one inbound HTTP request."""

    token: str | None = None
    claims: Mapping[str, Any] | None = None
    is_authenticated: bool = False
    session_id: str | None = None

    def with_session(self, session_id: str | None) -> "AuthContext":
        return replace(self, session_id=session_id)


auth_context: ContextPropagator[AuthContext] = ContextPropagator("auth_context")


async def run_in_context(
    context: AuthContext, operation: Callable[P, Awaitable[R]], *args: P.args, **kwargs: P.kwargs
) -> R:
    return await auth_context.run(context, operation, *args, **kwargs)


def current_context() -> AuthContext | None:
    return auth_context.current()


def is_authenticated() -> bool:
    context = auth_context.current()
    return context is not None and context.is_authenticated


def get_token_claims() -> Mapping[str, Any] | None:
    context = auth_context.current()
    return context.claims if context else None


def get_token() -> str | None:
    context = auth_context.current()
    return context.token if context else None


def get_session_id() -> str | None:
    context = auth_context.current()
    return context.session_id if context else None
