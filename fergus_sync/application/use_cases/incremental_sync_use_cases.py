"""
Casos de uso del sync incremental Fergus -> Airtable.

Diseño (resumen):
- Lee el checkpoint (o usa la ventana por defecto)
- Resuelve el ChangeSet y construye el índice de destino en paralelo
- Reconciliación por lotes (CREATE / UPDATE / SKIP) con reporte único
- Avanza el checkpoint al inicio de la corrida, nunca en cancelación/abort

Una corrida por entidad (jobs, invoices). `run_all` las ejecuta en secuencia.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from loguru import logger

from fergus_sync.application.services.batch_upsert_scheduler import (
    BatchUpsertScheduler,
    Enricher,
    FieldMapper,
    SchedulerConfig,
)
from fergus_sync.application.services.change_set_resolver import (
    ChangeSetResolver,
    ChangeStrategies,
    MergePolicy,
    RecordKeying,
)
from fergus_sync.application.services.destination_index import DestinationIndex
from fergus_sync.application.services.reconciliation_policy import (
    CompletenessPredicate,
    ReconciliationPolicy,
)
from fergus_sync.application.services.sync_checkpoint import SyncCheckpoint
from fergus_sync.core.config import SyncSettings
from fergus_sync.domain.entities.records import ChangeSet
from fergus_sync.domain.entities.run_report import RunCondition, RunReport, RunReportBuilder
from fergus_sync.domain.repositories.collaborators import IDestinationReader, IDestinationWriter
from fergus_sync.infrastructure.checkpoint.file_checkpoint_store import FileCheckpointStore
from fergus_sync.infrastructure.checkpoint.pg_checkpoint_store import PostgresCheckpointStore
from fergus_sync.infrastructure.external.airtable.airtable_client import AirtableClient, AirtableCredentials
from fergus_sync.infrastructure.external.fergus.fergus_client import FergusClient, FergusCredential
from fergus_sync.infrastructure.external.fergus.record_mappings import (
    INVOICE_COMPLETENESS,
    INVOICE_KEY_FIELD,
    INVOICE_KEYING,
    JOB_COMPLETENESS,
    JOB_KEY_FIELD,
    JOB_KEYING,
    InvoiceJobEnricher,
    JobDetailEnricher,
    map_invoice_fields,
    map_job_fields,
)
from fergus_sync.infrastructure.external.fergus.request_builders import FergusInvoiceRequests, FergusJobRequests
from fergus_sync.infrastructure.fetch.rate_limited_fetcher import FetchConfig, RateLimitedFetcher
from fergus_sync.shared.exceptions.sync import AuthExpiredError, CheckpointError, SyncConfigError
from fergus_sync.shared.utils.datetime_utils import to_iso_z, utc_now


@dataclass(frozen=True)
class EntityPipeline:
    """Todo lo que el motor necesita para sincronizar una entidad."""

    name: str
    strategies: ChangeStrategies
    keying: RecordKeying
    field_mapper: FieldMapper
    reader: IDestinationReader
    writer: IDestinationWriter
    key_field: str
    checkpoint: SyncCheckpoint
    completeness: Optional[CompletenessPredicate] = None
    enricher: Optional[Enricher] = None
    merge_policy: MergePolicy = MergePolicy.LAST_FETCHED_WINS


@dataclass(frozen=True)
class SyncRunResult:
    report: RunReport
    checkpoint_advanced: bool


async def _gather_or_cancel(*aws: Awaitable[Any]) -> Tuple[Any, ...]:
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return tuple(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class IncrementalSyncEngine:
    """
    Orquestador de una corrida incremental por entidad.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        *,
        scheduler_config: Optional[SchedulerConfig] = None,
        full_resync_fallback_threshold: float = 0.10,
        index_max_records: int = 50000,
        index_timeout_s: Optional[float] = None,
        advance_checkpoint_on_partial_failure: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetcher = fetcher
        self._scheduler_config = scheduler_config or SchedulerConfig()
        self._threshold = full_resync_fallback_threshold
        self._index_max_records = index_max_records
        self._index_timeout_s = index_timeout_s
        self._advance_on_partial = advance_checkpoint_on_partial_failure
        self._cancel = cancel_event or asyncio.Event()
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        fetcher: RateLimitedFetcher,
        config: SyncSettings,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> "IncrementalSyncEngine":
        return cls(
            fetcher,
            scheduler_config=SchedulerConfig.from_settings(config),
            full_resync_fallback_threshold=config.FULL_RESYNC_FALLBACK_THRESHOLD,
            index_max_records=config.DESTINATION_INDEX_MAX_RECORDS,
            index_timeout_s=config.DESTINATION_INDEX_TIMEOUT_S,
            advance_checkpoint_on_partial_failure=config.ADVANCE_CHECKPOINT_ON_PARTIAL_FAILURE,
            cancel_event=cancel_event,
        )

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel

    def cancel(self) -> None:
        """Cancelacion cooperativa: el grupo en vuelo termina, no arrancan mas."""
        if not self._cancel.is_set():
            logger.warning("Cancelacion solicitada")
        self._cancel.set()

    def _record_change_set(self, report: RunReportBuilder, change_set: ChangeSet, index: DestinationIndex) -> None:
        if change_set.full_resync:
            report.add_condition(RunCondition.FULL_RESYNC_FALLBACK)
        if index.degraded:
            report.add_condition(RunCondition.DEGRADED_INDEX)
        if change_set.truncated_strategies:
            report.add_condition(RunCondition.PAGE_CAP_REACHED)
            report.set_metadata("truncated_strategies", list(change_set.truncated_strategies))
        for page in change_set.failed_pages:
            report.add_failed_page(page)
        report.set_metadata("merge_conflicts", change_set.merge_conflicts)
        report.set_metadata("unkeyed_records", change_set.unkeyed_records)
        report.set_metadata("strategy_counts", dict(change_set.strategy_counts))
        report.set_metadata("index_truncated", index.truncated)

    def _should_advance(self, report: RunReport) -> bool:
        if report.cancelled or report.aborted:
            return False
        # Paginas nunca leidas: avanzar perderia esos registros
        if report.has_condition(RunCondition.PAGE_CAP_REACHED):
            return False
        return report.fully_succeeded or self._advance_on_partial

    async def run(self, entity: EntityPipeline) -> SyncRunResult:
        """
        Ejecuta una corrida completa para la entidad.

        Raises:
            AuthExpiredError: con `report` sellado (ABORTED); checkpoint intacto
        """
        started_at = self._clock()
        run_log = logger.bind(sync_run=f"{entity.name}:{to_iso_z(started_at)}")
        run_log.info(f"Iniciando sync incremental de '{entity.name}'")

        report = RunReportBuilder(entity.name, started_at)
        window_start = await entity.checkpoint.window_start(started_at)
        report.set_metadata("window_start", to_iso_z(window_start))
        run_log.info(f"Ventana de cambios desde {to_iso_z(window_start)}")

        policy = ReconciliationPolicy(entity.completeness)
        resolver = ChangeSetResolver(
            self._fetcher,
            entity.strategies,
            entity.keying,
            merge_policy=entity.merge_policy,
            full_resync_fallback_threshold=self._threshold,
        )

        try:
            change_set, index = await _gather_or_cancel(
                resolver.resolve(window_start),
                DestinationIndex.build(
                    entity.reader,
                    entity.key_field,
                    policy.projection_fields,
                    self._index_max_records,
                    timeout_s=self._index_timeout_s,
                ),
            )
        except AuthExpiredError as e:
            report.add_condition(RunCondition.ABORTED)
            sealed = report.seal()
            run_log.error(f"Credencial expirada resolviendo cambios: {e.message}")
            raise AuthExpiredError(e.message, status_code=e.status_code, report=sealed) from e

        self._record_change_set(report, change_set, index)

        scheduler = BatchUpsertScheduler(
            entity.writer,
            entity.field_mapper,
            config=self._scheduler_config,
            reader=entity.reader,
            key_field=entity.key_field,
            enricher=entity.enricher,
            cancel_event=self._cancel,
        )
        sealed = await scheduler.run(change_set, policy, index, report, entity=entity.name)

        advanced = False
        if self._should_advance(sealed):
            try:
                advanced = await entity.checkpoint.write(started_at, started_at)
            except CheckpointError as e:
                run_log.error(f"No se pudo avanzar el checkpoint: {e.message}")
        else:
            run_log.warning("Checkpoint no avanzado en esta corrida")

        if sealed.fully_succeeded:
            run_log.success(f"Sync completado: {sealed.summary()}")
        else:
            run_log.warning(f"Sync con incidencias: {sealed.summary()}")
        return SyncRunResult(report=sealed, checkpoint_advanced=advanced)

    async def run_all(
        self,
        entities: Iterable[EntityPipeline],
        *,
        on_result: Optional[Callable[[SyncRunResult], None]] = None,
    ) -> List[SyncRunResult]:
        """
        Corre las entidades en secuencia.

        Se detiene ante cancelacion. AuthExpiredError se propaga: las
        entidades siguientes usan la misma credencial.
        """
        results: List[SyncRunResult] = []
        for entity in entities:
            if self._cancel.is_set():
                logger.warning(f"Cancelado: se omite '{entity.name}' y las siguientes")
                break
            result = await self.run(entity)
            results.append(result)
            if on_result is not None:
                on_result(result)
        return results


def _checkpoint_for(config: SyncSettings, entity: str) -> SyncCheckpoint:
    if config.uses_postgres_checkpoint:
        store = PostgresCheckpointStore(
            _normalize_psycopg_dsn(config.DATABASE_URL), source="fergus", entity=entity
        )
    else:
        store = FileCheckpointStore.for_entity(config.CHECKPOINT_DIR, entity)
    return SyncCheckpoint(store, default_lookback=config.default_lookback, timeout_s=config.REQUEST_TIMEOUT_S)


def _normalize_psycopg_dsn(dsn: str) -> str:
    """
    Normaliza DSNs en formato SQLAlchemy (postgresql+asyncpg://...) a uno aceptado por psycopg.
    """
    if "://" not in dsn:
        return dsn
    scheme, rest = dsn.split("://", 1)
    scheme = scheme.replace("+asyncpg", "").replace("+psycopg", "")
    return f"{scheme}://{rest}"


def build_from_env(
    config: Optional[SyncSettings] = None,
    *,
    entities: Iterable[str] = ("jobs", "invoices"),
    cancel_event: Optional[asyncio.Event] = None,
) -> Tuple[IncrementalSyncEngine, List[EntityPipeline]]:
    """
    Constructor "oficial" del sync leyendo la configuracion (env/.env).

    Requiere FERGUS_COOKIE, AIRTABLE_TOKEN y AIRTABLE_BASE_ID.
    """
    config = (config or SyncSettings()).with_profile()
    for name in ("FERGUS_COOKIE", "AIRTABLE_TOKEN", "AIRTABLE_BASE_ID"):
        if not getattr(config, name):
            raise SyncConfigError(f"Falta variable de entorno obligatoria: {name}", field=name)

    source = FergusClient(
        FergusCredential(cookie=config.FERGUS_COOKIE),
        base_url=config.FERGUS_BASE_URL,
        timeout_s=config.REQUEST_TIMEOUT_S,
    )
    fetcher = RateLimitedFetcher(source, FetchConfig.from_settings(config))
    engine = IncrementalSyncEngine.from_settings(fetcher, config, cancel_event=cancel_event)

    credentials = AirtableCredentials(token=config.AIRTABLE_TOKEN, base_id=config.AIRTABLE_BASE_ID)
    job_requests = FergusJobRequests(page_size=config.PAGE_SIZE)
    job_enricher = JobDetailEnricher(fetcher, job_requests)

    def _airtable(table: str) -> AirtableClient:
        return AirtableClient(
            credentials,
            table,
            base_url=config.AIRTABLE_BASE_URL,
            timeout_s=config.WRITE_TIMEOUT_S,
            max_retries=config.MAX_RETRIES,
            min_backoff_s=config.MIN_BACKOFF_S,
            max_backoff_s=config.MAX_BACKOFF_S,
            call_budget_s=config.WRITE_TIMEOUT_S,
        )

    pipelines: List[EntityPipeline] = []
    for name in entities:
        if name == "jobs":
            table = _airtable(config.AIRTABLE_JOBS_TABLE)
            pipelines.append(EntityPipeline(
                name="jobs",
                strategies=job_requests,
                keying=JOB_KEYING,
                field_mapper=map_job_fields,
                reader=table,
                writer=table,
                key_field=JOB_KEY_FIELD,
                checkpoint=_checkpoint_for(config, "jobs"),
                completeness=JOB_COMPLETENESS,
                enricher=job_enricher,
            ))
        elif name == "invoices":
            table = _airtable(config.AIRTABLE_INVOICES_TABLE)
            pipelines.append(EntityPipeline(
                name="invoices",
                strategies=FergusInvoiceRequests(page_size=config.PAGE_SIZE),
                keying=INVOICE_KEYING,
                field_mapper=map_invoice_fields,
                reader=table,
                writer=table,
                key_field=INVOICE_KEY_FIELD,
                checkpoint=_checkpoint_for(config, "invoices"),
                completeness=INVOICE_COMPLETENESS,
                enricher=InvoiceJobEnricher(job_enricher),
            ))
        else:
            raise SyncConfigError(f"Entidad desconocida: '{name}'", field="entities")

    logger.info(
        f"Sync configurado (perfil {config.SYNC_PROFILE}): "
        f"{[p.name for p in pipelines]}, checkpoint en "
        f"{'Postgres' if config.uses_postgres_checkpoint else config.CHECKPOINT_DIR}"
    )
    return engine, pipelines
