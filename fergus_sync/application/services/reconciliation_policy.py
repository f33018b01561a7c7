"""
Politica de reconciliacion por registro: CREATE, UPDATE o SKIP.

Es pura: no hace I/O, solo consulta el indice de destino ya construido.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

from fergus_sync.domain.entities.records import DestinationRecordHandle, SourceRecord


class Action(Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True)
class Decision:
    action: Action
    handle: Optional[DestinationRecordHandle] = None
    reason: str = ""

    @classmethod
    def create(cls) -> "Decision":
        return cls(action=Action.CREATE)

    @classmethod
    def update(cls, handle: DestinationRecordHandle) -> "Decision":
        return cls(action=Action.UPDATE, handle=handle)

    @classmethod
    def skip(cls, reason: str, handle: Optional[DestinationRecordHandle] = None) -> "Decision":
        return cls(action=Action.SKIP, handle=handle, reason=reason)

    @property
    def writes(self) -> bool:
        return self.action is not Action.SKIP


class _Lookup(Protocol):
    def lookup(self, natural_key: str) -> Optional[DestinationRecordHandle]:
        ...


class CompletenessPredicate:
    """Predicado sobre el snapshot proyectado. `fields` alimenta la proyeccion del indice."""

    def __init__(self, func: Callable[[DestinationRecordHandle], bool], fields: Tuple[str, ...] = ()):
        self._func = func
        self.fields = tuple(fields)

    def __call__(self, handle: DestinationRecordHandle) -> bool:
        return bool(self._func(handle))


def _populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def fields_populated(*names: str) -> CompletenessPredicate:
    """El registro esta completo si todos los campos tienen valor no vacio."""

    def _check(handle: DestinationRecordHandle) -> bool:
        return all(_populated(handle.snapshot.get(name)) for name in names)

    return CompletenessPredicate(_check, fields=names)


ALREADY_COMPLETE = "already complete"


class ReconciliationPolicy:
    """
    Orden de decision:
    1. Sin registro en destino -> CREATE
    2. Registro presente y completo -> SKIP("already complete")
    3. Registro presente e incompleto -> UPDATE(handle)

    Sin predicado de completitud nunca se hace SKIP.
    """

    def __init__(self, completeness: Optional[CompletenessPredicate] = None):
        self._completeness = completeness

    @property
    def projection_fields(self) -> Tuple[str, ...]:
        if self._completeness is None:
            return ()
        return self._completeness.fields

    def decide(self, record: SourceRecord, index: _Lookup) -> Decision:
        return self.decide_for(record, index.lookup(record.natural_key))

    def decide_for(self, record: SourceRecord, handle: Optional[DestinationRecordHandle]) -> Decision:
        if handle is None:
            return Decision.create()
        if self._completeness is not None and self._completeness(handle):
            return Decision.skip(ALREADY_COMPLETE, handle=handle)
        return Decision.update(handle)
