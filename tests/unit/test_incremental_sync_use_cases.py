"""
Tests unitarios para incremental_sync_use_cases.py.

Corridas completas del motor contra fakes en memoria: idempotencia,
avance del checkpoint, cancelacion y credencial expirada.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import pytest

from fergus_sync.application.services.batch_upsert_scheduler import SchedulerConfig
from fergus_sync.application.services.reconciliation_policy import fields_populated
from fergus_sync.application.services.sync_checkpoint import SyncCheckpoint
from fergus_sync.application.use_cases.incremental_sync_use_cases import (
    EntityPipeline,
    IncrementalSyncEngine,
    SyncRunResult,
    _normalize_psycopg_dsn,
    build_from_env,
)
from fergus_sync.core.config import SyncSettings
from fergus_sync.domain.entities.records import SourceRecord
from fergus_sync.domain.entities.run_report import RunCondition
from fergus_sync.infrastructure.checkpoint.file_checkpoint_store import FileCheckpointStore
from fergus_sync.infrastructure.fetch.rate_limited_fetcher import FetchConfig, RateLimitedFetcher
from fergus_sync.shared.exceptions.sync import AuthExpiredError, SourceHttpError, SyncConfigError
from tests.fakes import KEY_FIELD, FakeCheckpointStore, FakeDestination, FakeSource, FakeStrategies, page, utc


RUN_START = utc(2025, 1, 10, 8, 0, 0)
PREVIOUS = utc(2025, 1, 9, 8, 0, 0)


class _FailingSetStore(FakeCheckpointStore):
    def set(self, timestamp: datetime) -> None:
        raise OSError("sin permisos")


def _mapper(record: SourceRecord) -> Dict[str, Any]:
    return {KEY_FIELD: record.natural_key, "Name": record.payload.get("name", "")}


def _engine(source: FakeSource, **kwargs: Any) -> IncrementalSyncEngine:
    fetcher = RateLimitedFetcher(source, FetchConfig(max_concurrency=2, inter_request_delay_s=0))
    kwargs.setdefault(
        "scheduler_config",
        SchedulerConfig(batch_size=3, concurrency=2, inter_task_delay_s=0, inter_batch_delay_s=0),
    )
    return IncrementalSyncEngine(fetcher, clock=lambda: RUN_START, **kwargs)


def _pipeline(keying, destination: FakeDestination, store: FakeCheckpointStore, name: str = "jobs",
              strategies: FakeStrategies = None) -> EntityPipeline:
    return EntityPipeline(
        name=name,
        strategies=strategies or FakeStrategies(),
        keying=keying,
        field_mapper=_mapper,
        reader=destination,
        writer=destination,
        key_field=KEY_FIELD,
        checkpoint=SyncCheckpoint(store),
        completeness=fields_populated("Name"),
    )


def _new_records(*keys: str) -> FakeSource:
    return FakeSource({("created", 1): page(*[{"key": k, "name": f"name-{k}"} for k in keys], has_more=False)})


class TestRun:
    """Tests de IncrementalSyncEngine.run()."""

    @pytest.mark.asyncio
    async def test_second_run_over_same_data_only_skips(self, keying, destination, checkpoint_store) -> None:
        """Primera corrida crea; la segunda sobre los mismos datos solo omite."""
        engine = _engine(_new_records("A", "B", "C", "D"))
        pipeline = _pipeline(keying, destination, checkpoint_store)

        first = await engine.run(pipeline)
        second = await engine.run(pipeline)

        assert first.report.created == 4
        assert second.report.created == 0
        assert second.report.updated == 0
        assert second.report.skipped == 4
        assert len(destination.records) == 4

    @pytest.mark.asyncio
    async def test_checkpoint_advances_to_run_start(self, keying, destination, checkpoint_store) -> None:
        checkpoint_store.value = PREVIOUS
        strategies = FakeStrategies()
        engine = _engine(_new_records("A"))

        result = await engine.run(_pipeline(keying, destination, checkpoint_store, strategies=strategies))

        assert strategies.checkpoints == [PREVIOUS]
        assert result.checkpoint_advanced
        assert checkpoint_store.value == RUN_START
        assert result.report.metadata["window_start"] == "2025-01-09T08:00:00Z"

    @pytest.mark.asyncio
    async def test_cancelled_run_does_not_advance_checkpoint(self, keying, destination, checkpoint_store) -> None:
        engine = _engine(_new_records("A", "B"))
        engine.cancel()

        result = await engine.run(_pipeline(keying, destination, checkpoint_store))

        assert result.report.cancelled
        assert not result.checkpoint_advanced
        assert checkpoint_store.writes == []
        assert destination.created == []

    @pytest.mark.asyncio
    async def test_auth_expired_while_resolving_aborts(self, keying, destination, checkpoint_store) -> None:
        source = FakeSource({("modified", 1): SourceHttpError("expirada", status_code=401)})

        with pytest.raises(AuthExpiredError) as exc_info:
            await _engine(source).run(_pipeline(keying, destination, checkpoint_store))

        assert exc_info.value.report.aborted
        assert checkpoint_store.writes == []

    @pytest.mark.asyncio
    async def test_auth_expired_while_writing_aborts(self, keying, destination, checkpoint_store) -> None:
        destination.fail_on["B"] = AuthExpiredError("expirada", status_code=403)

        with pytest.raises(AuthExpiredError) as exc_info:
            await _engine(_new_records("A", "B", "C", "D")).run(_pipeline(keying, destination, checkpoint_store))

        report = exc_info.value.report
        assert report.aborted
        assert report.not_processed > 0
        assert checkpoint_store.writes == []

    @pytest.mark.asyncio
    async def test_degraded_index_is_reported_and_run_continues(self, keying, destination, checkpoint_store) -> None:
        destination.fail_bulk_read = RuntimeError("timeout de Airtable")
        destination.seed("A", Name="ya estaba")

        result = await _engine(_new_records("A", "B")).run(_pipeline(keying, destination, checkpoint_store))

        report = result.report
        assert report.has_condition(RunCondition.DEGRADED_INDEX)
        assert report.skipped == 1
        assert report.created == 1
        assert sorted(destination.find_calls) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_full_resync_condition_is_reported(self, keying, destination, checkpoint_store) -> None:
        source = FakeSource({
            ("modified", 1): page(*[{"key": f"M{i}"} for i in range(20)], has_more=False),
            ("full", 1): page({"key": "F", "name": "f"}, has_more=False),
        })

        result = await _engine(source).run(_pipeline(keying, destination, checkpoint_store))

        assert result.report.has_condition(RunCondition.FULL_RESYNC_FALLBACK)
        assert destination.created == ["F"]

    @pytest.mark.asyncio
    async def test_partial_failure_advances_by_default(self, keying, destination, checkpoint_store) -> None:
        destination.fail_on["B"] = RuntimeError("422")

        result = await _engine(_new_records("A", "B")).run(_pipeline(keying, destination, checkpoint_store))

        assert result.report.failed == 1
        assert result.checkpoint_advanced

    @pytest.mark.asyncio
    async def test_partial_failure_can_hold_checkpoint(self, keying, destination, checkpoint_store) -> None:
        destination.fail_on["B"] = RuntimeError("422")
        engine = _engine(_new_records("A", "B"), advance_checkpoint_on_partial_failure=False)

        result = await engine.run(_pipeline(keying, destination, checkpoint_store))

        assert not result.checkpoint_advanced
        assert checkpoint_store.writes == []

    @pytest.mark.asyncio
    async def test_page_cap_holds_checkpoint_and_is_reported(self, keying, destination, checkpoint_store) -> None:
        """Con paginas sin leer el checkpoint no avanza aunque se permita el parcial."""
        source = FakeSource({
            ("created", n): page({"key": f"k{n}", "name": "x"}, has_more=True) for n in range(1, 6)
        })
        fetcher = RateLimitedFetcher(source, FetchConfig(inter_request_delay_s=0, max_pages=2))
        engine = IncrementalSyncEngine(
            fetcher,
            scheduler_config=SchedulerConfig(inter_task_delay_s=0, inter_batch_delay_s=0),
            clock=lambda: RUN_START,
        )

        result = await engine.run(_pipeline(keying, destination, checkpoint_store))

        report = result.report
        assert report.created == 2
        assert report.has_condition(RunCondition.PAGE_CAP_REACHED)
        assert report.metadata["truncated_strategies"] == ["created_since"]
        assert not report.fully_succeeded
        assert not result.checkpoint_advanced
        assert checkpoint_store.writes == []

    @pytest.mark.asyncio
    async def test_failed_pages_and_metadata_reach_report(self, keying, destination, checkpoint_store) -> None:
        source = FakeSource({
            ("created", 1): SourceHttpError("no existe", status_code=404),
            ("created", 2): page({"key": "A"}, {"nokey": 1}, has_more=False),
        })

        result = await _engine(source).run(_pipeline(keying, destination, checkpoint_store))

        report = result.report
        assert report.failed_pages == ("created [pagina 1]",)
        assert report.metadata["unkeyed_records"] == 1
        assert not report.fully_succeeded

    @pytest.mark.asyncio
    async def test_checkpoint_store_failure_is_logged_not_raised(self, keying, destination) -> None:
        store = _FailingSetStore()

        result = await _engine(_new_records("A")).run(_pipeline(keying, destination, store))

        assert result.report.created == 1
        assert not result.checkpoint_advanced


class TestRunAll:
    """Tests de run_all()."""

    @pytest.mark.asyncio
    async def test_entities_run_in_sequence(self, keying) -> None:
        jobs_dest, invoices_dest = FakeDestination(), FakeDestination()
        seen: List[SyncRunResult] = []

        results = await _engine(_new_records("A")).run_all(
            [
                _pipeline(keying, jobs_dest, FakeCheckpointStore(), name="jobs"),
                _pipeline(keying, invoices_dest, FakeCheckpointStore(), name="invoices"),
            ],
            on_result=seen.append,
        )

        assert [r.report.entity for r in results] == ["jobs", "invoices"]
        assert seen == results
        assert jobs_dest.created == ["A"]
        assert invoices_dest.created == ["A"]

    @pytest.mark.asyncio
    async def test_cancel_skips_remaining_entities(self, keying) -> None:
        event = asyncio.Event()
        engine = _engine(_new_records("A"), cancel_event=event)

        def _cancel_after(result: SyncRunResult) -> None:
            engine.cancel()

        results = await engine.run_all(
            [
                _pipeline(keying, FakeDestination(), FakeCheckpointStore(), name="jobs"),
                _pipeline(keying, FakeDestination(), FakeCheckpointStore(), name="invoices"),
            ],
            on_result=_cancel_after,
        )

        assert [r.report.entity for r in results] == ["jobs"]
        assert engine.cancel_event is event
        assert event.is_set()


class TestBuildFromEnv:
    """Tests del armado desde configuracion."""

    def test_missing_credentials_raise_config_error(self, tmp_path: Path) -> None:
        config = SyncSettings(FERGUS_COOKIE="", AIRTABLE_TOKEN="t", AIRTABLE_BASE_ID="b", CHECKPOINT_DIR=str(tmp_path))

        with pytest.raises(SyncConfigError) as exc_info:
            build_from_env(config)

        assert exc_info.value.details == {"field": "FERGUS_COOKIE"}

    def test_builds_one_pipeline_per_entity(self, tmp_path: Path) -> None:
        config = SyncSettings(
            FERGUS_COOKIE="session=abc",
            AIRTABLE_TOKEN="t",
            AIRTABLE_BASE_ID="b",
            CHECKPOINT_DIR=str(tmp_path),
            DATABASE_URL="",
        )

        engine, pipelines = build_from_env(config)

        assert [p.name for p in pipelines] == ["jobs", "invoices"]
        assert [p.key_field for p in pipelines] == ["Job ID", "Invoice Number"]
        assert isinstance(engine, IncrementalSyncEngine)

    def test_unknown_entity_raises(self, tmp_path: Path) -> None:
        config = SyncSettings(FERGUS_COOKIE="c", AIRTABLE_TOKEN="t", AIRTABLE_BASE_ID="b", CHECKPOINT_DIR=str(tmp_path))

        with pytest.raises(SyncConfigError):
            build_from_env(config, entities=["quotes"])

    def test_file_checkpoint_is_per_entity(self, tmp_path: Path) -> None:
        store = FileCheckpointStore.for_entity(tmp_path, "invoices")

        assert store.path == tmp_path / "last_sync_invoices.json"

    @pytest.mark.parametrize(
        "dsn, expected",
        [
            ("postgresql+asyncpg://u:p@h:5432/db", "postgresql://u:p@h:5432/db"),
            ("postgresql+psycopg://u@h/db", "postgresql://u@h/db"),
            ("postgresql://u@h/db", "postgresql://u@h/db"),
        ],
    )
    def test_normalize_psycopg_dsn(self, dsn: str, expected: str) -> None:
        assert _normalize_psycopg_dsn(dsn) == expected
