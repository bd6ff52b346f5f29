"""
stage-orchestrator — credential scope manager

File: src/stage_orchestrator/credentials/scope.py

Purpose
- Resolve logical credential names into short-lived bindings that exist only
  for the dynamic extent of the operation that requested them.

Normative behavior
- Every scope gets fresh ``SecretHandle`` instances; handles are never shared
  between scopes, even for the same logical name.
- Handles are invalidated on every exit path: normal return, exception and
  task cancellation.
- Resolution happens for all requested names before the body starts; a missing
  credential raises ``CredentialResolutionFailure`` and the body never runs.
- Resolved values are registered with the run's ``SecretMasker``.
"""

from __future__ import annotations

import inspect
import itertools
import os
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

import structlog

from stage_orchestrator.domain.errors import CredentialResolutionFailure

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from stage_orchestrator.security.redaction import SecretMasker

T = TypeVar("T")

logger = structlog.get_logger(__name__)

_scope_ids = itertools.count(1)


@runtime_checkable
class CredentialProvider(Protocol):
    """Backing store lookup. Secret storage itself lives outside the orchestrator."""

    def resolve(self, name: str) -> str: ...


class EnvCredentialProvider:
    """Resolve logical names through a name -> environment variable table."""

    def __init__(
        self,
        variables: Mapping[str, str],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._variables = dict(variables)
        self._environ = environ if environ is not None else os.environ

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._variables)

    def resolve(self, name: str) -> str:
        variable = self._variables.get(name)
        if variable is None:
            raise CredentialResolutionFailure(name, "no such credential is configured")
        value = self._environ.get(variable)
        if value is None or value == "":
            raise CredentialResolutionFailure(name, f"environment variable {variable} is not set")
        return value


class MappingCredentialProvider:
    """In-memory provider; used by tests and embedding callers."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = dict(values)

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._values)

    def resolve(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise CredentialResolutionFailure(name) from None


class InvalidatedCredentialError(RuntimeError):
    """Raised when a handle is used after its scope has closed."""


class SecretHandle:
    """One binding of a logical name to a secret value, valid inside one scope."""

    __slots__ = ("_name", "_scope_id", "_value")

    def __init__(self, name: str, value: str, *, scope_id: int) -> None:
        self._name = name
        self._scope_id = scope_id
        self._value: str | None = value

    @property
    def name(self) -> str:
        return self._name

    @property
    def scope_id(self) -> int:
        return self._scope_id

    @property
    def is_valid(self) -> bool:
        return self._value is not None

    def reveal(self) -> str:
        if self._value is None:
            raise InvalidatedCredentialError(
                f"credential {self._name!r} used outside of scope {self._scope_id}"
            )
        return self._value

    def invalidate(self) -> None:
        self._value = None

    def __repr__(self) -> str:
        state = "valid" if self.is_valid else "invalidated"
        return f"SecretHandle(name={self._name!r}, scope={self._scope_id}, {state})"


class CredentialBindings(Mapping[str, SecretHandle]):
    """Read-only name -> handle view handed to an operation body."""

    def __init__(self, handles: Mapping[str, SecretHandle], *, scope_id: int) -> None:
        self._handles = dict(handles)
        self.scope_id = scope_id

    def __getitem__(self, name: str) -> SecretHandle:
        try:
            return self._handles[name]
        except KeyError:
            raise CredentialResolutionFailure(
                name, "credential was not declared by this operation"
            ) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def reveal(self, name: str) -> str:
        return self[name].reveal()

    def as_env(self, variables: Mapping[str, str]) -> dict[str, str]:
        """Render bindings as environment entries using ``variables`` for names."""

        env: dict[str, str] = {}
        for name, handle in self._handles.items():
            env[variables.get(name, default_env_name(name))] = handle.reveal()
        return env

    def invalidate(self) -> None:
        for handle in self._handles.values():
            handle.invalidate()


EMPTY_BINDINGS_SCOPE_ID = 0


class CredentialScopeManager:
    """Open credential scopes around operation bodies."""

    def __init__(
        self,
        provider: CredentialProvider,
        *,
        masker: SecretMasker | None = None,
    ) -> None:
        self._provider = provider
        self._masker = masker
        self._open_scopes = 0

    @property
    def open_scopes(self) -> int:
        return self._open_scopes

    @asynccontextmanager
    async def scope(self, names: Iterable[str]) -> AsyncIterator[CredentialBindings]:
        requested = tuple(dict.fromkeys(names))
        scope_id = next(_scope_ids) if requested else EMPTY_BINDINGS_SCOPE_ID
        bindings = CredentialBindings(self._resolve_all(requested, scope_id), scope_id=scope_id)
        self._open_scopes += 1
        if requested:
            logger.debug("credential_scope_opened", scope_id=scope_id, names=list(requested))
        try:
            yield bindings
        finally:
            bindings.invalidate()
            self._open_scopes -= 1
            if requested:
                logger.debug("credential_scope_closed", scope_id=scope_id)

    async def with_credential(
        self,
        name: str,
        body: Callable[[SecretHandle], Awaitable[T] | T],
    ) -> T:
        """Run ``body`` with a handle for ``name``; the handle dies when ``body`` ends."""

        async with self.scope((name,)) as bindings:
            result = body(bindings[name])
            if inspect.isawaitable(result):
                return await result
            return result

    def _resolve_all(self, names: tuple[str, ...], scope_id: int) -> dict[str, SecretHandle]:
        handles: dict[str, SecretHandle] = {}
        for name in names:
            try:
                value = self._provider.resolve(name)
            except CredentialResolutionFailure:
                raise
            except Exception as exc:
                raise CredentialResolutionFailure(name, f"provider error: {exc}") from exc
            if not isinstance(value, str) or not value:
                raise CredentialResolutionFailure(name, "provider returned an empty value")
            if self._masker is not None:
                self._masker.register(value)
            handles[name] = SecretHandle(name, value, scope_id=scope_id)
        return handles


def default_env_name(name: str) -> str:
    """``registry-token`` -> ``REGISTRY_TOKEN``."""

    return "".join(char if char.isalnum() else "_" for char in name).upper()


__all__ = [
    "CredentialBindings",
    "CredentialProvider",
    "CredentialScopeManager",
    "EnvCredentialProvider",
    "InvalidatedCredentialError",
    "MappingCredentialProvider",
    "SecretHandle",
    "default_env_name",
]
