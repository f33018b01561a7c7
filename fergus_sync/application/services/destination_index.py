"""
Indice en memoria del destino, construido con una sola lectura masiva.

Reemplaza la consulta "existe este registro?" por registro: el indice se arma
una vez por corrida y queda de solo lectura.

- Si la lectura masiva falla, el indice queda vacio y `degraded`: el
  scheduler pasa a buscar registro por registro con find_by_key.
- Si hay mas de un registro con la misma natural key, lookup retorna el de
  menor record_id y el resto no se toca.
"""
from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from fergus_sync.domain.entities.records import DestinationRecordHandle
from fergus_sync.domain.entities.run_report import ReconciliationAmbiguity
from fergus_sync.domain.repositories.collaborators import IDestinationReader
from fergus_sync.infrastructure.executor import call_collaborator
from fergus_sync.shared.exceptions.sync import DestinationIndexBuildError


def _materialize(func: Callable[..., Iterable[Any]], *args: Any) -> List[Any]:
    return list(func(*args))


def build_projection(key_field: str, fields: Sequence[str]) -> Tuple[str, ...]:
    """Campo clave primero, luego los de completitud, sin duplicados."""
    projection = [key_field]
    for name in fields:
        if name not in projection:
            projection.append(name)
    return tuple(projection)


class DestinationIndex:
    def __init__(
        self,
        key_field: str,
        handles: Optional[Iterable[DestinationRecordHandle]] = None,
        *,
        degraded: bool = False,
        truncated: bool = False,
        build_error: Optional[DestinationIndexBuildError] = None,
    ):
        self.key_field = key_field
        self.degraded = degraded
        self.truncated = truncated
        self.build_error = build_error
        self._by_key: Dict[str, List[DestinationRecordHandle]] = {}
        self._warned: set = set()

        for handle in handles or ():
            self._by_key.setdefault(handle.natural_key, []).append(handle)
        for key, group in self._by_key.items():
            group.sort(key=lambda h: h.record_id)

    @classmethod
    def empty(cls, key_field: str) -> "DestinationIndex":
        return cls(key_field)

    @classmethod
    async def build(
        cls,
        reader: IDestinationReader,
        key_field: str,
        projection: Sequence[str] = (),
        limit: int = 50000,
        *,
        timeout_s: Optional[float] = None,
    ) -> "DestinationIndex":
        """
        Construye el indice con una lectura masiva proyectada.

        Nunca levanta por fallos del lector: retorna un indice degradado.
        """
        fields = build_projection(key_field, projection)
        logger.info(f"Construyendo indice de destino por '{key_field}' (limite {limit}, campos {list(fields)})")

        try:
            if inspect.iscoroutinefunction(reader.bulk_read):
                rows = list(await call_collaborator(
                    reader.bulk_read, key_field, fields, limit, timeout_s=timeout_s
                ))
            else:
                rows = await call_collaborator(
                    _materialize, reader.bulk_read, key_field, fields, limit, timeout_s=timeout_s
                )
        except Exception as e:
            error = DestinationIndexBuildError(e)
            logger.error(f"{error.message}. Se continua con indice degradado (busqueda por registro)")
            return cls(key_field, degraded=True, build_error=error)

        handles = []
        keyless = 0
        for row in rows:
            handle = cls._to_handle(row, key_field, fields)
            if handle is None:
                keyless += 1
                continue
            handles.append(handle)

        truncated = len(rows) >= limit
        if truncated:
            logger.warning(
                f"Indice de destino truncado en {limit} registros: "
                f"registros fuera del limite se veran como inexistentes"
            )
        if keyless:
            logger.debug(f"{keyless} registros de destino sin '{key_field}' ignorados")

        index = cls(key_field, handles, truncated=truncated)
        logger.info(f"Indice de destino listo: {len(index)} claves, {len(index.ambiguities)} ambiguas")
        return index

    @staticmethod
    def _to_handle(
        row: Mapping[str, Any],
        key_field: str,
        fields: Sequence[str],
    ) -> Optional[DestinationRecordHandle]:
        record_id = row.get("id")
        row_fields = row.get("fields") or {}
        key = row_fields.get(key_field)
        if not record_id or key is None or not str(key).strip():
            return None
        snapshot = {name: row_fields.get(name) for name in fields if name in row_fields}
        return DestinationRecordHandle(
            record_id=str(record_id),
            natural_key=str(key).strip(),
            snapshot=snapshot,
        )

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, natural_key: str) -> bool:
        return natural_key in self._by_key

    def candidates(self, natural_key: str) -> Tuple[DestinationRecordHandle, ...]:
        return tuple(self._by_key.get(natural_key, ()))

    def is_ambiguous(self, natural_key: str) -> bool:
        return len(self._by_key.get(natural_key, ())) > 1

    def lookup(self, natural_key: str) -> Optional[DestinationRecordHandle]:
        group = self._by_key.get(natural_key)
        if not group:
            return None
        if len(group) > 1 and natural_key not in self._warned:
            self._warned.add(natural_key)
            logger.warning(
                f"Natural key ambigua '{natural_key}' en destino "
                f"({len(group)} registros): se usa {group[0].record_id}"
            )
        return group[0]

    @property
    def ambiguities(self) -> Tuple[ReconciliationAmbiguity, ...]:
        return tuple(
            ReconciliationAmbiguity(
                natural_key=key,
                record_ids=tuple(h.record_id for h in group),
                chosen_record_id=group[0].record_id,
            )
            for key, group in self._by_key.items()
            if len(group) > 1
        )
