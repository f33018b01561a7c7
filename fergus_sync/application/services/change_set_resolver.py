"""
Deteccion de cambios desde el ultimo checkpoint.

Diseño (resumen):
- Dos estrategias complementarias corren en paralelo via el fetcher:
  "modified since" (header If-Modified-Since) y "created since" (filtro por
  fecha de creacion).
- Los registros de "modified since" con timestamp utilizable <= checkpoint se
  descartan. Los que no traen timestamp se conservan (conservador).
- Se fusiona por natural key con una MergePolicy explicita.
- Si casi ningun registro trae timestamp, el filtro no es confiable: se lee la
  poblacion completa (FULL_RESYNC_FALLBACK).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from loguru import logger

from fergus_sync.application.services.field_extractors import ExtractorChain
from fergus_sync.domain.entities.records import ChangeSet, PageRequest, SourceRecord
from fergus_sync.infrastructure.fetch.rate_limited_fetcher import RateLimitedFetcher
from fergus_sync.shared.utils.datetime_utils import ensure_utc, parse_timestamp, to_iso_z


MODIFIED_SINCE = "modified_since"
CREATED_SINCE = "created_since"
FULL_POPULATION = "full_population"


class MergePolicy(Enum):
    """Que contenido gana cuando la misma natural key aparece mas de una vez."""
    LAST_FETCHED_WINS = "last_fetched_wins"
    FIRST_FETCHED_WINS = "first_fetched_wins"
    MOST_RECENTLY_MODIFIED_WINS = "most_recently_modified_wins"

    def choose(self, existing: SourceRecord, incoming: SourceRecord) -> SourceRecord:
        if self is MergePolicy.FIRST_FETCHED_WINS:
            return existing
        if self is MergePolicy.MOST_RECENTLY_MODIFIED_WINS:
            if existing.last_modified is not None and (
                incoming.last_modified is None or existing.last_modified > incoming.last_modified
            ):
                return existing
            return incoming
        return incoming


class ChangeStrategies(Protocol):
    """Arma las requests de cada estrategia de lectura."""

    def modified_since(self, checkpoint: datetime) -> PageRequest:
        ...

    def created_since(self, checkpoint: datetime) -> PageRequest:
        ...

    def full_population(self) -> Optional[PageRequest]:
        ...


@dataclass(frozen=True)
class RecordKeying:
    """Como convertir un payload crudo en SourceRecord."""

    natural_key: ExtractorChain
    last_modified: Optional[ExtractorChain] = None
    created_at: Optional[ExtractorChain] = None

    def to_record(self, payload: Mapping[str, Any], strategy: str) -> Optional[SourceRecord]:
        key, key_source = self.natural_key.extract(payload)
        if key_source is None:
            return None
        key_str = str(key).strip()
        if not key_str:
            return None

        last_modified = parse_timestamp(self.last_modified.value(payload)) if self.last_modified else None
        created_at = parse_timestamp(self.created_at.value(payload)) if self.created_at else None
        return SourceRecord(
            natural_key=key_str,
            payload=payload,
            last_modified=last_modified,
            created_at=created_at,
            strategy=strategy,
            key_source=key_source,
        )


@dataclass
class _StrategyResult:
    strategy: str
    records: List[SourceRecord] = field(default_factory=list)
    failed_pages: List[str] = field(default_factory=list)
    unkeyed: int = 0
    server_total: Optional[int] = None
    page_cap_reached: bool = False


class _Merger:
    """Fusion por natural key preservando la posicion de primera aparicion."""

    def __init__(self, policy: MergePolicy):
        self._policy = policy
        self._order: List[str] = []
        self._by_key: Dict[str, SourceRecord] = {}
        self.conflicts = 0

    def add(self, record: SourceRecord) -> None:
        existing = self._by_key.get(record.natural_key)
        if existing is None:
            self._order.append(record.natural_key)
            self._by_key[record.natural_key] = record
            return
        if dict(existing.payload) != dict(record.payload):
            self.conflicts += 1
            logger.debug(
                f"Contenido distinto para '{record.natural_key}' "
                f"({existing.strategy} vs {record.strategy}), politica {self._policy.value}"
            )
        self._by_key[record.natural_key] = self._policy.choose(existing, record)

    def records(self) -> Tuple[SourceRecord, ...]:
        return tuple(self._by_key[k] for k in self._order)


class ChangeSetResolver:
    """
    Resuelve el ChangeSet de una corrida.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        strategies: ChangeStrategies,
        keying: RecordKeying,
        *,
        merge_policy: MergePolicy = MergePolicy.LAST_FETCHED_WINS,
        full_resync_fallback_threshold: float = 0.10,
    ):
        self._fetcher = fetcher
        self._strategies = strategies
        self._keying = keying
        self._merge_policy = merge_policy
        self._threshold = full_resync_fallback_threshold

    async def _collect(self, strategy: str, request: PageRequest) -> _StrategyResult:
        result = _StrategyResult(strategy=strategy)
        async for page in self._fetcher.fetch_all(request, skip_failed_pages=True):
            if page.page_cap_reached:
                result.page_cap_reached = True
                continue
            if page.failed:
                result.failed_pages.append(str(page.request))
                continue
            if page.total_records is not None:
                result.server_total = max(result.server_total or 0, page.total_records)
            for payload in page.records:
                record = self._keying.to_record(payload, strategy)
                if record is None:
                    result.unkeyed += 1
                    continue
                result.records.append(record)
        logger.info(
            f"Estrategia {strategy}: {len(result.records)} registros, "
            f"{len(result.failed_pages)} paginas fallidas"
        )
        return result

    async def _collect_concurrently(self, *jobs: Tuple[str, PageRequest]) -> List[_StrategyResult]:
        tasks = [asyncio.create_task(self._collect(name, req)) for name, req in jobs]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _needs_full_resync(self, modified: _StrategyResult) -> bool:
        seen = len(modified.records)
        if seen == 0:
            return False
        usable = sum(1 for r in modified.records if r.last_modified is not None)
        if usable == seen:
            return False
        population = max(modified.server_total or 0, seen)
        ratio = usable / population
        logger.debug(f"Timestamps utilizables: {usable}/{population} ({ratio:.2%})")
        return ratio < self._threshold

    async def resolve(self, checkpoint: datetime) -> ChangeSet:
        """
        Lee el origen y retorna los registros a reconciliar.

        Raises:
            AuthExpiredError: si el origen rechaza la credencial
        """
        checkpoint = ensure_utc(checkpoint)
        logger.info(f"Resolviendo cambios desde {to_iso_z(checkpoint)}")

        modified, created = await self._collect_concurrently(
            (MODIFIED_SINCE, self._strategies.modified_since(checkpoint)),
            (CREATED_SINCE, self._strategies.created_since(checkpoint)),
        )

        failed_pages = modified.failed_pages + created.failed_pages
        truncated = [r.strategy for r in (modified, created) if r.page_cap_reached]
        unkeyed = modified.unkeyed + created.unkeyed
        strategy_counts = {
            MODIFIED_SINCE: len(modified.records),
            CREATED_SINCE: len(created.records),
        }

        if self._needs_full_resync(modified):
            full_request = self._strategies.full_population()
            if full_request is not None:
                return await self._resolve_full(full_request, failed_pages, unkeyed, strategy_counts, truncated)
            logger.warning("Timestamps insuficientes pero no hay estrategia de poblacion completa")

        merger = _Merger(self._merge_policy)
        dropped = 0
        for record in modified.records:
            if record.last_modified is not None and record.last_modified <= checkpoint:
                dropped += 1
                continue
            merger.add(record)
        for record in created.records:
            merger.add(record)

        records = merger.records()
        if dropped:
            logger.debug(f"{dropped} registros sin cambios desde el checkpoint descartados")
        if unkeyed:
            logger.warning(f"{unkeyed} registros sin natural key descartados")
        if truncated:
            logger.warning(f"Estrategias cortadas por max_pages: {truncated}")
        logger.info(
            f"ChangeSet: {len(records)} registros "
            f"({strategy_counts[MODIFIED_SINCE]} modificados, {strategy_counts[CREATED_SINCE]} nuevos, "
            f"{merger.conflicts} conflictos de merge)"
        )
        return ChangeSet(
            records=records,
            full_resync=False,
            failed_pages=tuple(failed_pages),
            merge_conflicts=merger.conflicts,
            unkeyed_records=unkeyed,
            strategy_counts=strategy_counts,
            truncated_strategies=tuple(truncated),
        )

    async def _resolve_full(
        self,
        request: PageRequest,
        failed_pages: List[str],
        unkeyed: int,
        strategy_counts: Dict[str, int],
        truncated: List[str],
    ) -> ChangeSet:
        logger.warning(
            "FULL_RESYNC_FALLBACK: el origen no informa timestamps suficientes, "
            "se reconcilia la poblacion completa"
        )
        (full,) = await self._collect_concurrently((FULL_POPULATION, request))

        merger = _Merger(self._merge_policy)
        for record in full.records:
            merger.add(record)
        records = merger.records()
        strategy_counts = dict(strategy_counts)
        strategy_counts[FULL_POPULATION] = len(full.records)
        if full.page_cap_reached:
            logger.warning("Resync completo cortado por max_pages: la poblacion leida esta incompleta")
            truncated = truncated + [FULL_POPULATION]

        logger.info(f"ChangeSet (resync completo): {len(records)} registros")
        return ChangeSet(
            records=records,
            full_resync=True,
            failed_pages=tuple(failed_pages + full.failed_pages),
            merge_conflicts=merger.conflicts,
            unkeyed_records=unkeyed + full.unkeyed,
            strategy_counts=strategy_counts,
            truncated_strategies=tuple(truncated),
        )
