"""Shared fixtures for pylitemodel tests."""

import pytest
import pytest_asyncio

from pylitemodel import Model

from .helpers import PERSON_ATTRIBUTES, TASK_ATTRIBUTES, RecordingStore, seed_tasks


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def people(store):
    return Model.define("Person", store, PERSON_ATTRIBUTES)


@pytest.fixture
def tasks(store):
    return Model.define("Task", store, TASK_ATTRIBUTES)


@pytest_asyncio.fixture
async def seeded_tasks(store, tasks):
    """Five active tasks with ids t1..t5 and ranks 1..5."""
    await seed_tasks(store, 5)
    return tasks
