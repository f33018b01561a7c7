"""
Scheduler de escrituras por lotes contra el destino.

Modelo de ejecucion:
- El ChangeSet se parte en lotes contiguos de `batch_size`.
- Dentro de cada lote, grupos de `concurrency` tareas se lanzan en orden y se
  esperan juntos. Entre grupos se espera `inter_task_delay_s` y entre lotes
  `inter_batch_delay_s`.
- Cada tarea: decide -> enriquece (solo CREATE/UPDATE) -> mapea -> escribe.

Un error en un registro queda como FAILED y el resto sigue. Solo la
credencial expirada o la cancelacion cortan la corrida.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, NoReturn, Optional, Sequence

from loguru import logger

from fergus_sync.application.services.destination_index import DestinationIndex
from fergus_sync.application.services.reconciliation_policy import (
    Action,
    Decision,
    ReconciliationPolicy,
)
from fergus_sync.core.config import SyncSettings
from fergus_sync.domain.entities.records import ChangeSet, DestinationRecordHandle, SourceRecord
from fergus_sync.domain.entities.run_report import (
    BatchJobOutcome,
    OutcomeTag,
    RunCondition,
    RunReport,
    RunReportBuilder,
)
from fergus_sync.domain.repositories.collaborators import IDestinationReader, IDestinationWriter
from fergus_sync.infrastructure.executor import call_collaborator
from fergus_sync.shared.exceptions.sync import (
    AuthExpiredError,
    DuplicateKeyError,
    RecordWriteError,
    SourceRequestError,
    SyncConfigError,
    TransientFetchError,
)


FieldMapper = Callable[[SourceRecord], Mapping[str, Any]]
Enricher = Callable[[SourceRecord], Awaitable[Optional[Mapping[str, Any]]]]


@dataclass(frozen=True)
class SchedulerConfig:
    batch_size: int = 20
    concurrency: int = 5
    inter_task_delay_s: float = 0.1
    inter_batch_delay_s: float = 1.0
    write_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise SyncConfigError("batch_size debe ser > 0", field="batch_size")
        if self.concurrency <= 0:
            raise SyncConfigError("concurrency debe ser > 0", field="concurrency")
        if self.inter_task_delay_s < 0 or self.inter_batch_delay_s < 0:
            raise SyncConfigError("los delays deben ser >= 0", field="inter_task_delay_s")

    @classmethod
    def from_settings(cls, config: SyncSettings) -> "SchedulerConfig":
        return cls(
            batch_size=config.BATCH_SIZE,
            concurrency=config.MAX_CONCURRENCY_WRITE,
            inter_task_delay_s=config.INTER_TASK_DELAY_MS / 1000.0,
            inter_batch_delay_s=config.INTER_BATCH_DELAY_MS / 1000.0,
            write_timeout_s=config.WRITE_TIMEOUT_S,
        )


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchUpsertScheduler:
    """
    Ejecuta la reconciliacion de un ChangeSet contra el destino.

    Args:
        writer: create/update en el destino
        field_mapper: SourceRecord -> campos del destino (inyectado)
        config: parametros de lotes y ritmo
        reader: necesario para find_by_key (indice degradado y DuplicateKeyError)
        key_field: campo de natural key en el destino
        enricher: corrutina opcional que agrega detalle al registro
        cancel_event: cancelacion cooperativa
    """

    def __init__(
        self,
        writer: IDestinationWriter,
        field_mapper: FieldMapper,
        *,
        config: Optional[SchedulerConfig] = None,
        reader: Optional[IDestinationReader] = None,
        key_field: Optional[str] = None,
        enricher: Optional[Enricher] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._writer = writer
        self._field_mapper = field_mapper
        self._config = config or SchedulerConfig()
        self._reader = reader
        self._key_field = key_field
        self._enricher = enricher
        self._cancel = cancel_event
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def _pause(self, delay_s: float) -> None:
        """Espera de ritmo que despierta antes si se cancela."""
        if delay_s <= 0 or self.cancelled:
            return
        if self._cancel is None:
            await asyncio.sleep(delay_s)
            return
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=delay_s)
        except asyncio.TimeoutError:
            pass

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        # Una escritura bloqueante vencida sigue ocupando su cupo hasta que el thread termina
        return await call_collaborator(
            func, *args, timeout_s=self._config.write_timeout_s, wait_for_late_result=True
        )

    async def _find_by_key(self, natural_key: str) -> Optional[DestinationRecordHandle]:
        if self._reader is None or self._key_field is None:
            raise SyncConfigError(
                "find_by_key requiere reader y key_field en el scheduler", field="reader"
            )
        return await self._call(self._reader.find_by_key, self._key_field, natural_key)

    async def _decide(
        self,
        record: SourceRecord,
        policy: ReconciliationPolicy,
        index: DestinationIndex,
        report: RunReportBuilder,
    ) -> Decision:
        # Indice truncado: una ausencia no prueba que el registro no exista
        if index.degraded or (index.truncated and record.natural_key not in index):
            return policy.decide_for(record, await self._find_by_key(record.natural_key))
        if index.is_ambiguous(record.natural_key):
            report.add_ambiguous_key(record.natural_key)
        return policy.decide(record, index)

    async def _enrich(self, record: SourceRecord) -> SourceRecord:
        if self._enricher is None:
            return record
        try:
            extra = await self._enricher(record)
        except (TransientFetchError, SourceRequestError) as e:
            logger.warning(f"Sin detalle para '{record.natural_key}', se escribe lo basico: {e.message}")
            return record
        return record.with_payload(extra) if extra else record

    async def _write(self, decision: Decision, record: SourceRecord, fields: Mapping[str, Any]) -> BatchJobOutcome:
        key = record.natural_key
        if decision.action is Action.UPDATE:
            try:
                record_id = await self._call(self._writer.update, decision.handle, fields)
            except (AuthExpiredError, asyncio.TimeoutError):
                raise
            except Exception as e:
                raise RecordWriteError(key, "update", e) from e
            return BatchJobOutcome(key, OutcomeTag.UPDATED, record_id=record_id or decision.handle.record_id)

        try:
            record_id = await self._call(self._writer.create, fields)
            return BatchJobOutcome(key, OutcomeTag.CREATED, record_id=record_id)
        except DuplicateKeyError:
            logger.info(f"'{key}' ya existia en destino (creado concurrentemente), se actualiza")
        except (AuthExpiredError, asyncio.TimeoutError):
            raise
        except Exception as e:
            raise RecordWriteError(key, "create", e) from e

        handle = await self._find_by_key(key)
        if handle is None:
            raise RecordWriteError(key, "create", DuplicateKeyError(key))
        try:
            record_id = await self._call(self._writer.update, handle, fields)
        except (AuthExpiredError, asyncio.TimeoutError):
            raise
        except Exception as e:
            raise RecordWriteError(key, "update", e) from e
        return BatchJobOutcome(
            key, OutcomeTag.UPDATED, reason="duplicate key on create", record_id=record_id or handle.record_id
        )

    async def _process(
        self,
        record: SourceRecord,
        policy: ReconciliationPolicy,
        index: DestinationIndex,
        report: RunReportBuilder,
    ) -> BatchJobOutcome:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            decision = await self._decide(record, policy, index, report)
            if decision.action is Action.SKIP:
                outcome = BatchJobOutcome(
                    record.natural_key,
                    OutcomeTag.SKIPPED,
                    reason=decision.reason,
                    record_id=decision.handle.record_id if decision.handle else None,
                )
            else:
                record = await self._enrich(record)
                fields = self._field_mapper(record)
                outcome = await self._write(decision, record, fields)
        except AuthExpiredError:
            raise
        except asyncio.TimeoutError:
            outcome = BatchJobOutcome.failed(
                record.natural_key, f"timeout ({self._config.write_timeout_s}s)"
            )
        except RecordWriteError as e:
            outcome = BatchJobOutcome.failed(record.natural_key, e.message)
        except Exception as e:
            outcome = BatchJobOutcome.failed(record.natural_key, f"{type(e).__name__}: {e}")
        finally:
            self._in_flight -= 1

        if outcome.tag is OutcomeTag.FAILED:
            logger.error(f"Fallo '{record.natural_key}': {outcome.reason}")
        else:
            logger.debug(f"{outcome.tag.value} '{record.natural_key}'")
        await report.record(outcome)
        return outcome

    async def run(
        self,
        change_set: ChangeSet,
        policy: ReconciliationPolicy,
        index: DestinationIndex,
        report: Optional[RunReportBuilder] = None,
        *,
        entity: str = "records",
    ) -> RunReport:
        """
        Reconcilia el ChangeSet y retorna el reporte sellado.

        Raises:
            AuthExpiredError: con `report` sellado y condicion ABORTED
        """
        report = report or RunReportBuilder(entity)
        records = list(change_set.records)
        report.set_total_records(len(records))
        batches = _chunks(records, self._config.batch_size)
        processed = 0

        for batch_no, batch in enumerate(batches, start=1):
            if self.cancelled:
                break
            logger.info(f"Procesando batch {batch_no}/{len(batches)} ({len(batch)} registros)")

            groups = _chunks(batch, self._config.concurrency)
            for group_no, group in enumerate(groups):
                if self.cancelled:
                    break
                results = await asyncio.gather(
                    *[self._process(r, policy, index, report) for r in group],
                    return_exceptions=True,
                )
                auth_error = next((r for r in results if isinstance(r, AuthExpiredError)), None)
                processed += sum(1 for r in results if isinstance(r, BatchJobOutcome))
                if auth_error is not None:
                    self._abort(report, auth_error, len(records) - processed)
                unexpected = next((r for r in results if isinstance(r, BaseException)), None)
                if unexpected is not None:
                    raise unexpected

                if group_no < len(groups) - 1:
                    await self._pause(self._config.inter_task_delay_s)

            if batch_no < len(batches) and not self.cancelled:
                logger.debug(f"Batch completo. Esperando {self._config.inter_batch_delay_s}s")
                await self._pause(self._config.inter_batch_delay_s)

        if self.cancelled:
            report.add_condition(RunCondition.CANCELLED)
            report.set_not_processed(len(records) - processed)
            logger.warning(f"Corrida cancelada: {len(records) - processed} registros sin procesar")

        sealed = report.seal()
        logger.info(f"Scheduler terminado: {sealed.summary()}")
        return sealed

    def _abort(self, report: RunReportBuilder, error: AuthExpiredError, pending: int) -> NoReturn:
        report.add_condition(RunCondition.ABORTED)
        report.set_not_processed(pending)
        sealed = report.seal()
        logger.error(f"Corrida abortada por credencial expirada: {sealed.summary()}")
        raise AuthExpiredError(error.message, status_code=error.status_code, report=sealed) from error
