"""Narrow interfaces the recommendation core depends on.

Adapters live in ``stores``, ``db``, ``cache`` and ``ai``; tests plug in fakes.
"""

from typing import Any, Protocol, runtime_checkable

from .models import ComponentRecord, PreferencePattern, UserInteraction


@runtime_checkable
class CatalogRepository(Protocol):
    """Read access to component records."""

    async def get_by_id(self, component_id: str) -> ComponentRecord | None: ...

    async def get_by_category(self, category: str) -> list[ComponentRecord]: ...

    async def get_all(self) -> list[ComponentRecord]: ...


@runtime_checkable
class CacheStore(Protocol):
    """TTL key/value store. Last write wins."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_hours: float) -> None: ...


@runtime_checkable
class PreferenceStore(Protocol):
    async def get(self, user_id: str, pattern_type: str, subject: str) -> PreferencePattern | None: ...

    async def set(self, pattern: PreferencePattern) -> None: ...

    async def list_for_user(self, user_id: str) -> list[PreferencePattern]: ...


@runtime_checkable
class InteractionStore(Protocol):
    """Append-only interaction log."""

    async def append(self, interaction: UserInteraction) -> None: ...

    async def count(self, user_id: str) -> int: ...

    async def list_for_user(self, user_id: str) -> list[UserInteraction]: ...


@runtime_checkable
class AITextService(Protocol):
    """Optional free-text enrichment (explanations). Never required for a result."""

    async def enrich(self, prompt: str) -> str: ...
