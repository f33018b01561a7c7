"""
Tests unitarios para destination_index.py.
"""
from __future__ import annotations

import pytest

from fergus_sync.application.services.destination_index import DestinationIndex, build_projection
from fergus_sync.domain.entities.records import DestinationRecordHandle
from fergus_sync.shared.exceptions.sync import DestinationIndexBuildError
from tests.fakes import KEY_FIELD, FakeDestination


class _SyncReader(FakeDestination):
    """Lector bloqueante: bulk_read retorna un generador."""

    def bulk_read(self, key_field, projection, limit):  # type: ignore[override]
        self.bulk_reads += 1
        for rid, fields in sorted(self.records.items()):
            yield {"id": rid, "fields": {k: v for k, v in fields.items() if k in projection}}


def test_build_projection_puts_key_first_without_duplicates() -> None:
    assert build_projection("Key", ("Status", "Key", "Total")) == ("Key", "Status", "Total")


class TestBuild:
    """Tests de DestinationIndex.build()."""

    @pytest.mark.asyncio
    async def test_single_bulk_read_with_projection(self, destination: FakeDestination) -> None:
        """Una sola lectura masiva; el snapshot contiene solo campos proyectados."""
        destination.seed("A", Status="ok", Notes="no proyectado")
        destination.seed("B")

        index = await DestinationIndex.build(destination, KEY_FIELD, ("Status",))

        assert destination.bulk_reads == 1
        assert len(index) == 2
        handle = index.lookup("A")
        assert handle is not None
        assert dict(handle.snapshot) == {KEY_FIELD: "A", "Status": "ok"}
        assert not index.degraded
        assert not index.truncated

    @pytest.mark.asyncio
    async def test_blocking_reader_is_supported(self) -> None:
        """Un bulk_read sincrono (generador) se materializa en el executor."""
        reader = _SyncReader()
        reader.seed("A")

        index = await DestinationIndex.build(reader, KEY_FIELD)

        assert "A" in index
        assert reader.bulk_reads == 1

    @pytest.mark.asyncio
    async def test_rows_without_key_are_ignored(self, destination: FakeDestination) -> None:
        destination.records["rec9"] = {"Other": "x"}
        destination.seed("  ")
        destination.seed("A")

        index = await DestinationIndex.build(destination, KEY_FIELD)

        assert len(index) == 1

    @pytest.mark.asyncio
    async def test_failure_returns_degraded_empty_index(self, destination: FakeDestination) -> None:
        """Si la lectura falla no se levanta: el indice queda vacio y degradado."""
        destination.seed("A")
        destination.fail_bulk_read = RuntimeError("Airtable caido")

        index = await DestinationIndex.build(destination, KEY_FIELD)

        assert index.degraded
        assert len(index) == 0
        assert isinstance(index.build_error, DestinationIndexBuildError)
        assert isinstance(index.build_error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_reaching_limit_marks_index_truncated(self, destination: FakeDestination) -> None:
        """Con tantas filas como el limite, el indice se marca truncado."""
        for key in ("A", "B", "C"):
            destination.seed(key)

        index = await DestinationIndex.build(destination, KEY_FIELD, limit=2)

        assert index.truncated
        assert len(index) == 2
        assert index.lookup("C") is None


class TestLookup:
    """Tests de lookup() y ambiguedad."""

    def _index(self) -> DestinationIndex:
        return DestinationIndex(
            KEY_FIELD,
            [
                DestinationRecordHandle("rec0300", "A"),
                DestinationRecordHandle("rec0100", "A"),
                DestinationRecordHandle("rec0200", "A"),
                DestinationRecordHandle("rec0400", "B"),
            ],
        )

    def test_missing_key_returns_none(self) -> None:
        assert self._index().lookup("Z") is None

    def test_ambiguous_key_returns_lowest_record_id(self) -> None:
        """Entre duplicados gana el record_id mas bajo (deterministico)."""
        index = self._index()

        assert index.lookup("A").record_id == "rec0100"
        assert index.candidates("A")[0].record_id == "rec0100"
        assert index.is_ambiguous("A")
        assert not index.is_ambiguous("B")

    def test_ambiguities_are_listed(self) -> None:
        ambiguities = self._index().ambiguities

        assert len(ambiguities) == 1
        assert ambiguities[0].natural_key == "A"
        assert ambiguities[0].record_ids == ("rec0100", "rec0200", "rec0300")
        assert ambiguities[0].chosen_record_id == "rec0100"

    def test_empty_index(self) -> None:
        index = DestinationIndex.empty(KEY_FIELD)

        assert len(index) == 0
        assert not index.degraded
        assert index.lookup("A") is None
