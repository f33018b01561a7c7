"""
Registros y paginas que fluyen por el motor de sync.

Todos son inmutables: el motor nunca modifica un registro de origen,
solo decide que hacer con el.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


def freeze_payload(payload: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Envuelve el payload en una vista de solo lectura."""
    if isinstance(payload, MappingProxyType):
        return payload
    return MappingProxyType(dict(payload or {}))


@dataclass(frozen=True)
class SourceRecord:
    """
    Registro leido del origen.

    `strategy` indica que estrategia de lectura lo produjo (modified_since,
    created_since, full_population) y `key_source` que extractor resolvio la
    natural key.
    """

    natural_key: str
    payload: Mapping[str, Any]
    last_modified: Optional[datetime] = None  # None = timestamp no utilizable
    created_at: Optional[datetime] = None
    strategy: str = ""
    key_source: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", freeze_payload(self.payload))

    def with_payload(self, extra: Mapping[str, Any]) -> "SourceRecord":
        """Retorna una copia con el payload extendido (enriquecimiento)."""
        merged: Dict[str, Any] = dict(self.payload)
        merged.update(extra)
        return SourceRecord(
            natural_key=self.natural_key,
            payload=merged,
            last_modified=self.last_modified,
            created_at=self.created_at,
            strategy=self.strategy,
            key_source=self.key_source,
        )


@dataclass(frozen=True)
class DestinationRecordHandle:
    """Referencia a un registro existente en el destino (solo campos proyectados)."""

    record_id: str
    natural_key: str
    snapshot: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "snapshot", freeze_payload(self.snapshot))


@dataclass(frozen=True)
class PageRequest:
    """
    Request de lectura paginada contra el origen.

    `params` y `headers` son opacos para el motor: los arma un request builder
    del colaborador concreto.
    """

    url: str
    method: str = "GET"
    page: int = 1
    page_size: int = 20
    params: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None
    label: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", freeze_payload(self.params))
        object.__setattr__(self, "headers", freeze_payload(self.headers))
        if self.body is not None:
            object.__setattr__(self, "body", freeze_payload(self.body))

    def for_page(self, page: int) -> "PageRequest":
        """Misma request apuntando a otra pagina."""
        return PageRequest(
            url=self.url,
            method=self.method,
            page=page,
            page_size=self.page_size,
            params=self.params,
            headers=self.headers,
            body=self.body,
            label=self.label,
        )

    def __str__(self) -> str:
        name = self.label or f"{self.method} {self.url}"
        return f"{name} [pagina {self.page}]"


@dataclass(frozen=True)
class FetchResult:
    """Respuesta cruda del colaborador de origen para una pagina."""

    records: Tuple[Mapping[str, Any], ...] = ()
    has_more: Optional[bool] = None
    total_pages: Optional[int] = None
    total_records: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records or ()))


@dataclass(frozen=True)
class Page:
    """
    Pagina entregada por el fetcher.

    Si `error` no es None la pagina fallo y `records` viene vacio.
    `page_cap_reached` marca el corte por max_pages con paginas sin leer.
    """

    request: PageRequest
    records: Tuple[Mapping[str, Any], ...] = ()
    has_more: Optional[bool] = None
    total_pages: Optional[int] = None
    total_records: Optional[int] = None
    error: Optional[BaseException] = None
    page_cap_reached: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def number(self) -> int:
        return self.request.page


@dataclass(frozen=True)
class ChangeSet:
    """
    Conjunto de registros a reconciliar en la corrida.

    `records` tiene natural keys unicas en orden de primera aparicion.
    """

    records: Tuple[SourceRecord, ...] = ()
    full_resync: bool = False
    failed_pages: Tuple[str, ...] = ()
    merge_conflicts: int = 0
    unkeyed_records: int = 0
    strategy_counts: Mapping[str, int] = field(default_factory=dict)
    truncated_strategies: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records))
        object.__setattr__(self, "failed_pages", tuple(self.failed_pages))
        object.__setattr__(self, "truncated_strategies", tuple(self.truncated_strategies))
        object.__setattr__(self, "strategy_counts", freeze_payload(self.strategy_counts))

    def __len__(self) -> int:
        return len(self.records)

    @property
    def keys(self) -> Tuple[str, ...]:
        return tuple(r.natural_key for r in self.records)
