"""Test doubles shared across the test modules."""

from collections import Counter

from pylitemodel import MemoryStore


class RecordingStore(MemoryStore):
    """MemoryStore that records every call made through the store surface."""

    def __init__(self):
        super().__init__()
        self.calls = Counter()
        self.put_ids = []
        self.patched_ids = []
        self.deleted_ids = []
        self.queries = []

    async def get(self, collection, document_id):
        self.calls["get"] += 1
        return await super().get(collection, document_id)

    async def put(self, collection, document_id, document):
        self.calls["put"] += 1
        self.put_ids.append(document_id)
        await super().put(collection, document_id, document)

    async def patch(self, collection, document_id, partial):
        self.calls["patch"] += 1
        self.patched_ids.append(document_id)
        await super().patch(collection, document_id, partial)

    async def delete(self, collection, document_id):
        self.calls["delete"] += 1
        self.deleted_ids.append(document_id)
        await super().delete(collection, document_id)

    async def query(self, collection, criteria, sort=None, limit=None, offset=0):
        self.calls["query"] += 1
        self.queries.append((criteria, sort, limit, offset))
        return await super().query(collection, criteria, sort, limit, offset)

    async def count(self, collection, criteria):
        self.calls["count"] += 1
        return await super().count(collection, criteria)

    async def listen(self, collection, criteria, on_change, on_error=None):
        self.calls["listen"] += 1
        return await super().listen(collection, criteria, on_change, on_error)

    def reset(self):
        self.calls.clear()
        self.put_ids.clear()
        self.patched_ids.clear()
        self.deleted_ids.clear()
        self.queries.clear()


async def seed_tasks(store, count, status="active"):
    """Put ``count`` tasks with ids t1..tN and ranks 1..N, then clear the call log."""
    for i in range(1, count + 1):
        await store.put("task", f"t{i}", {"title": f"task {i}", "status": status, "rank": i})
    store.reset()


PERSON_ATTRIBUTES = {
    "name": {"type": "string", "required": True},
    "age": {"type": "number", "defaultsTo": 0},
}

TASK_ATTRIBUTES = {
    "title": "string",
    "status": {"type": "string", "enum": ["active", "archived"], "defaultsTo": "active"},
    "rank": "number",
}
