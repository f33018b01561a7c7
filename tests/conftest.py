"""
Configuración de fixtures para pytest.
"""
import pytest

from fergus_sync.application.services.change_set_resolver import RecordKeying
from fergus_sync.application.services.field_extractors import ExtractorChain
from tests.fakes import FakeCheckpointStore, FakeDestination, SleepRecorder


@pytest.fixture
def keying() -> RecordKeying:
    return RecordKeying(
        natural_key=ExtractorChain.of_paths("key", "key", "id"),
        last_modified=ExtractorChain.of_paths("updated", "updated", "updated_at"),
        created_at=ExtractorChain.of_paths("created", "created", "created_at"),
    )


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def destination() -> FakeDestination:
    return FakeDestination()


@pytest.fixture
def checkpoint_store() -> FakeCheckpointStore:
    return FakeCheckpointStore()
