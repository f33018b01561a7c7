"""
Reporte de corrida del sync.

Un RunReportBuilder se crea al inicio de cada corrida y recibe los resultados
de cada registro a medida que terminan. `seal()` produce un RunReport
inmutable; cualquier append posterior levanta ReportSealedError.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from fergus_sync.shared.exceptions.sync import ReportSealedError
from fergus_sync.shared.utils.datetime_utils import to_iso_z, utc_now


class OutcomeTag(Enum):
    """Resultado de un registro en la corrida."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunCondition(Enum):
    """Condiciones reportables de la corrida (no son errores)."""
    FULL_RESYNC_FALLBACK = "full_resync_fallback"  # ChangeSet reemplazado por la poblacion completa
    DEGRADED_INDEX = "degraded_index"              # Indice de destino vacio por fallo de lectura
    PAGE_CAP_REACHED = "page_cap_reached"          # Lectura del origen cortada por max_pages
    CANCELLED = "cancelled"                        # Cancelacion cooperativa
    ABORTED = "aborted"                            # Credencial expirada


@dataclass(frozen=True)
class BatchJobOutcome:
    """Resultado de procesar un registro."""

    natural_key: str
    tag: OutcomeTag
    reason: str = ""
    record_id: Optional[str] = None

    @classmethod
    def failed(cls, natural_key: str, reason: str) -> "BatchJobOutcome":
        return cls(natural_key=natural_key, tag=OutcomeTag.FAILED, reason=reason)


@dataclass(frozen=True)
class FailedRecord:
    natural_key: str
    reason: str


@dataclass(frozen=True)
class ReconciliationAmbiguity:
    """
    Mas de un registro de destino comparte la misma natural key.

    Se reporta, no se levanta: el indice elige `chosen_record_id` y el resto
    queda intacto.
    """

    natural_key: str
    record_ids: Tuple[str, ...]
    chosen_record_id: str


@dataclass(frozen=True)
class RunReport:
    """Resumen inmutable de una corrida para una entidad."""

    entity: str
    started_at: datetime
    finished_at: datetime
    total_records: int = 0
    outcomes: Tuple[BatchJobOutcome, ...] = ()
    failed_records: Tuple[FailedRecord, ...] = ()
    conditions: Tuple[RunCondition, ...] = ()
    failed_pages: Tuple[str, ...] = ()
    ambiguous_keys: Tuple[str, ...] = ()
    not_processed: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def duration_s(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    @property
    def counts(self) -> Dict[str, int]:
        counts = {tag.value: 0 for tag in OutcomeTag}
        for outcome in self.outcomes:
            counts[outcome.tag.value] += 1
        return counts

    def count(self, tag: OutcomeTag) -> int:
        return sum(1 for o in self.outcomes if o.tag is tag)

    @property
    def created(self) -> int:
        return self.count(OutcomeTag.CREATED)

    @property
    def updated(self) -> int:
        return self.count(OutcomeTag.UPDATED)

    @property
    def skipped(self) -> int:
        return self.count(OutcomeTag.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeTag.FAILED)

    def has_condition(self, condition: RunCondition) -> bool:
        return condition in self.conditions

    @property
    def cancelled(self) -> bool:
        return self.has_condition(RunCondition.CANCELLED)

    @property
    def aborted(self) -> bool:
        return self.has_condition(RunCondition.ABORTED)

    @property
    def fully_succeeded(self) -> bool:
        """Sin registros fallidos, paginas fallidas o sin leer, ni corte anticipado."""
        return (
            self.failed == 0
            and not self.failed_pages
            and not self.has_condition(RunCondition.PAGE_CAP_REACHED)
            and not self.cancelled
            and not self.aborted
            and self.not_processed == 0
        )

    def outcome_for(self, natural_key: str) -> Optional[BatchJobOutcome]:
        for outcome in self.outcomes:
            if outcome.natural_key == natural_key:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convierte el reporte a diccionario para exportar como JSON."""
        return {
            "entity": self.entity,
            "started_at": to_iso_z(self.started_at),
            "finished_at": to_iso_z(self.finished_at),
            "duration_s": round(self.duration_s, 3),
            "total_records": self.total_records,
            "counts": self.counts,
            "failed": [
                {"natural_key": f.natural_key, "reason": f.reason}
                for f in self.failed_records
            ],
            "conditions": [c.value for c in self.conditions],
            "failed_pages": list(self.failed_pages),
            "ambiguous_keys": list(self.ambiguous_keys),
            "not_processed": self.not_processed,
            "metadata": dict(self.metadata),
        }

    def summary(self) -> str:
        c = self.counts
        parts = [
            f"{self.entity}: {c['created']} creados",
            f"{c['updated']} actualizados",
            f"{c['skipped']} omitidos",
            f"{c['failed']} fallidos",
        ]
        if self.not_processed:
            parts.append(f"{self.not_processed} sin procesar")
        if self.conditions:
            parts.append("condiciones=" + ",".join(c.value for c in self.conditions))
        return ", ".join(parts) + f" ({self.duration_s:.1f}s)"


class RunReportBuilder:
    """
    Acumula resultados durante la corrida.

    Los appends desde tareas concurrentes se serializan con un asyncio.Lock.
    """

    def __init__(self, entity: str, started_at: Optional[datetime] = None):
        self.entity = entity
        self.started_at = started_at or utc_now()
        self._lock = asyncio.Lock()
        self._outcomes: List[BatchJobOutcome] = []
        self._conditions: List[RunCondition] = []
        self._failed_pages: List[str] = []
        self._ambiguous_keys: List[str] = []
        self._metadata: Dict[str, Any] = {}
        self._total_records = 0
        self._not_processed = 0
        self._sealed: Optional[RunReport] = None

    @property
    def sealed(self) -> bool:
        return self._sealed is not None

    def _ensure_open(self) -> None:
        if self._sealed is not None:
            raise ReportSealedError(self.entity)

    async def record(self, outcome: BatchJobOutcome) -> None:
        async with self._lock:
            self._ensure_open()
            self._outcomes.append(outcome)

    def add_condition(self, condition: RunCondition) -> None:
        self._ensure_open()
        if condition not in self._conditions:
            self._conditions.append(condition)

    def add_failed_page(self, page_label: str) -> None:
        self._ensure_open()
        self._failed_pages.append(page_label)

    def add_ambiguous_key(self, natural_key: str) -> None:
        self._ensure_open()
        if natural_key not in self._ambiguous_keys:
            self._ambiguous_keys.append(natural_key)

    def set_total_records(self, total: int) -> None:
        self._ensure_open()
        self._total_records = total

    def set_not_processed(self, count: int) -> None:
        self._ensure_open()
        self._not_processed = max(0, count)

    def set_metadata(self, key: str, value: Any) -> None:
        self._ensure_open()
        self._metadata[key] = value

    @property
    def processed(self) -> int:
        return len(self._outcomes)

    def seal(self, finished_at: Optional[datetime] = None) -> RunReport:
        """Congela el reporte. Llamadas posteriores retornan el mismo reporte."""
        if self._sealed is not None:
            return self._sealed

        failed = tuple(
            FailedRecord(natural_key=o.natural_key, reason=o.reason)
            for o in self._outcomes
            if o.tag is OutcomeTag.FAILED
        )
        self._sealed = RunReport(
            entity=self.entity,
            started_at=self.started_at,
            finished_at=finished_at or utc_now(),
            total_records=self._total_records,
            outcomes=tuple(self._outcomes),
            failed_records=failed,
            conditions=tuple(self._conditions),
            failed_pages=tuple(self._failed_pages),
            ambiguous_keys=tuple(self._ambiguous_keys),
            not_processed=self._not_processed,
            metadata=dict(self._metadata),
        )
        logger.debug(f"Reporte sellado: {self._sealed.summary()}")
        return self._sealed
