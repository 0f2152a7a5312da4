"""JSON-file collections: one ``{id: entity}`` map per file.

Files are written atomically (write-to-tmp + rename) so a crash never leaves
a half-written collection.  There is no transaction or locking: callers get
last-write-wins.  ``update`` performs load, mutate and save without awaiting,
so on a single event loop it cannot interleave with another ``update``; all
mutation of existing entities goes through it, and it bumps ``version``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JsonCollection(Generic[T]):
    """Load/save-by-id over ``{data_dir}/{name}.json``.

    ``model`` must provide ``from_dict(data)`` and ``to_dict()`` and have an
    ``id`` attribute (all persisted domain dataclasses do).
    """

    def __init__(self, data_dir: str, name: str, model: Type[T]) -> None:
        self._path = Path(data_dir) / f"{name}.json"
        self._model = model

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, T]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("Failed to read %s: %s", self._path, exc)
            return {}
        items: Dict[str, T] = {}
        for item_id, data in (raw or {}).items():
            try:
                items[item_id] = self._model.from_dict(data)  # type: ignore[attr-defined]
            except Exception as exc:
                logger.warning("Skipping malformed %s entry %r: %s", self._path.name, item_id, exc)
        return items

    def save(self, items: Dict[str, T]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {item_id: item.to_dict() for item_id, item in items.items()}  # type: ignore[attr-defined]
        tmp = self._path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self._path)

    def get(self, item_id: str) -> Optional[T]:
        return self.load().get(item_id)

    def values(self) -> List[T]:
        return list(self.load().values())

    def put(self, item: T) -> T:
        items = self.load()
        items[item.id] = item  # type: ignore[attr-defined]
        self.save(items)
        return item

    def update(self, item_id: str, mutate: Callable[[T], Any]) -> Optional[T]:
        """Apply ``mutate`` to the stored entity and save; ``None`` if absent."""
        items = self.load()
        item = items.get(item_id)
        if item is None:
            return None
        mutate(item)
        if hasattr(item, "version"):
            item.version += 1  # type: ignore[attr-defined]
        self.save(items)
        return item

    def delete(self, item_id: str) -> bool:
        items = self.load()
        if item_id not in items:
            return False
        del items[item_id]
        self.save(items)
        return True
