"""In-memory adapters for the catalog, preference and interaction ports.

The catalog is loaded from a JSON file (a list, or {"components": [...]}) or
from JSONL, one record per line. Records are validated once at load time;
parsed records are then kept in a bounded TTL cache and re-parsed from the
raw data when evicted.
"""

import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable

from .cache import TTLCache
from .config import SPEC_CACHE_MAX_SIZE, SPEC_CACHE_TTL_HOURS
from .errors import ValidationError
from .models import ComponentRecord, PreferencePattern, UserInteraction

logger = logging.getLogger(__name__)


class InMemoryCatalog:
    """Catalog repository backed by raw component dicts."""

    def __init__(
        self,
        records: Iterable[dict[str, Any]] = (),
        spec_cache: TTLCache | None = None,
    ):
        self._raw: dict[str, dict[str, Any]] = {}
        self._by_category: dict[str, list[str]] = defaultdict(list)
        self._specs = spec_cache or TTLCache(max_size=SPEC_CACHE_MAX_SIZE)
        for data in records:
            self.add(data)

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryCatalog":
        """Load a .json or .jsonl catalog. Invalid records are skipped with a warning."""
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix == ".jsonl":
            items = []
            for line_no, line in enumerate(text.splitlines(), 1):
                if not line.strip():
                    continue
                try:
                    items.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed line {line_no} in {path}: {e}")
        else:
            data = json.loads(text)
            items = data.get("components", []) if isinstance(data, dict) else data

        catalog = cls()
        skipped = 0
        for item in items:
            try:
                catalog.add(item)
            except ValidationError as e:
                skipped += 1
                logger.warning(f"Skipping invalid catalog record: {e}")
        logger.info(f"Loaded {len(catalog)} components from {path} ({skipped} skipped)")
        return catalog

    def add(self, data: dict[str, Any]) -> ComponentRecord:
        """Validate and add (or replace) a record."""
        if not isinstance(data, dict):
            raise ValidationError(f"Catalog record must be an object, got {type(data).__name__}")
        record = ComponentRecord.from_dict(data)
        record.spec.validate()

        previous = self._raw.get(record.id)
        if previous is not None and previous.get("category"):
            self._by_category[previous["category"]].remove(record.id)
        self._raw[record.id] = data
        if record.category:
            self._by_category[record.category].append(record.id)
        self._specs.set(record.id, record, SPEC_CACHE_TTL_HOURS)
        return record

    def _record(self, component_id: str) -> ComponentRecord | None:
        record = self._specs.get(component_id)
        if record is not None:
            return record
        data = self._raw.get(component_id)
        if data is None:
            return None
        record = ComponentRecord.from_dict(data)
        self._specs.set(component_id, record, SPEC_CACHE_TTL_HOURS)
        return record

    async def get_by_id(self, component_id: str) -> ComponentRecord | None:
        return self._record(component_id)

    async def get_by_category(self, category: str) -> list[ComponentRecord]:
        ids = sorted(self._by_category.get(category, ()))
        return [r for r in (self._record(i) for i in ids) if r is not None]

    async def get_all(self) -> list[ComponentRecord]:
        return [r for r in (self._record(i) for i in sorted(self._raw)) if r is not None]

    def __len__(self) -> int:
        return len(self._raw)


class InMemoryPreferenceStore:
    def __init__(self):
        self._patterns: dict[tuple[str, str, str], PreferencePattern] = {}

    async def get(self, user_id: str, pattern_type: str, subject: str) -> PreferencePattern | None:
        return self._patterns.get((user_id, pattern_type, subject))

    async def set(self, pattern: PreferencePattern) -> None:
        self._patterns[pattern.key] = pattern

    async def list_for_user(self, user_id: str) -> list[PreferencePattern]:
        return [p for key, p in sorted(self._patterns.items()) if key[0] == user_id]


class InMemoryInteractionStore:
    def __init__(self):
        self._by_user: dict[str, list[UserInteraction]] = defaultdict(list)

    async def append(self, interaction: UserInteraction) -> None:
        self._by_user[interaction.user_id].append(interaction)

    async def count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, ()))

    async def list_for_user(self, user_id: str) -> list[UserInteraction]:
        return list(self._by_user.get(user_id, ()))
