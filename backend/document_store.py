from __future__ import annotations

import copy
import uuid
from typing import Any, Optional, Protocol

"""
Document store capability consumed by discovery and moderation.

The hosted store is external; the core only relies on the primitives below.
`InMemoryDocumentStore` backs the dev server and the tests.

Semantics:
- `range_query` returns documents whose `order_key` value lies in [start, end]
  (both inclusive), ascending by that key, capped at `limit`.
- Field paths use dot notation (`abuse_reports_count.fraud`).
- Array mutations are by value, never by index.
- `compare_and_set_field` writes only while the field still equals `expected`;
  callers re-read and retry when it returns False.
"""


class DocumentStore(Protocol):
    async def range_query(
        self, collection: str, order_key: str, start: str, end: str, limit: int
    ) -> list[dict[str, Any]]: ...

    async def list_documents(
        self, collection: str, order_key: str, *, descending: bool = False
    ) -> list[dict[str, Any]]: ...

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]: ...

    async def add(self, collection: str, data: dict[str, Any]) -> str: ...

    async def put(self, collection: str, doc_id: str, data: dict[str, Any]) -> None: ...

    async def update_fields(self, collection: str, doc_id: str, updates: dict[str, Any]) -> None: ...

    async def compare_and_set_field(
        self, collection: str, doc_id: str, path: str, expected: Any, value: Any
    ) -> bool: ...

    async def append_to_array_field(self, collection: str, doc_id: str, field: str, value: Any) -> None: ...

    async def remove_from_array_field(self, collection: str, doc_id: str, field: str, value: Any) -> None: ...


class DocumentNotFound(LookupError):
    pass


def get_path(doc: dict[str, Any], path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _collection(self, collection: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _require(self, collection: str, doc_id: str) -> dict[str, Any]:
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise DocumentNotFound(f"{collection}/{doc_id} does not exist.")
        return doc

    async def range_query(
        self, collection: str, order_key: str, start: str, end: str, limit: int
    ) -> list[dict[str, Any]]:
        rows = []
        for doc in self._collection(collection).values():
            key = get_path(doc, order_key)
            if isinstance(key, str) and start <= key <= end:
                rows.append(doc)
        rows.sort(key=lambda d: get_path(d, order_key))
        return [copy.deepcopy(d) for d in rows[: max(0, int(limit))]]

    async def list_documents(
        self, collection: str, order_key: str, *, descending: bool = False
    ) -> list[dict[str, Any]]:
        rows = [d for d in self._collection(collection).values() if get_path(d, order_key) is not None]
        rows.sort(key=lambda d: get_path(d, order_key), reverse=descending)
        return [copy.deepcopy(d) for d in rows]

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await self.put(collection, doc_id, {**data, "id": doc_id})
        return doc_id

    async def put(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._collection(collection)[doc_id] = copy.deepcopy(data)

    async def update_fields(self, collection: str, doc_id: str, updates: dict[str, Any]) -> None:
        doc = self._require(collection, doc_id)
        for path, value in updates.items():
            set_path(doc, path, copy.deepcopy(value))

    async def increment_field(self, collection: str, doc_id: str, path: str, amount: int = 1) -> int:
        """
        Atomically add `amount` to a numeric field and return the new value.
        """
        doc = self._require(collection, doc_id)
        value = int(get_path(doc, path) or 0) + int(amount)
        set_path(doc, path, value)
        return value

    async def compare_and_set_field(
        self, collection: str, doc_id: str, path: str, expected: Any, value: Any
    ) -> bool:
        doc = self._require(collection, doc_id)
        if get_path(doc, path) != expected:
            return False
        set_path(doc, path, copy.deepcopy(value))
        return True

    async def append_to_array_field(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        # arrayUnion semantics: an equal value is not added twice.
        doc = self._require(collection, doc_id)
        arr = get_path(doc, field)
        if not isinstance(arr, list):
            arr = []
            set_path(doc, field, arr)
        if value not in arr:
            arr.append(copy.deepcopy(value))

    async def remove_from_array_field(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        # arrayRemove semantics: removes every equal element, no-op when none match.
        doc = self._require(collection, doc_id)
        arr = get_path(doc, field)
        if isinstance(arr, list):
            set_path(doc, field, [v for v in arr if v != value])
