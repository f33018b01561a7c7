"""
Interfaces de los colaboradores externos del motor de sync.
Define el contrato que debe cumplir cualquier implementacion.

Las implementaciones pueden ser sincronas (requests, psycopg) o corrutinas:
el motor las invoca siempre via `call_collaborator`, que corre las
bloqueantes en un ThreadPoolExecutor dedicado y aplica timeout a ambas.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from fergus_sync.domain.entities.records import (
    DestinationRecordHandle,
    FetchResult,
    PageRequest,
)


class ISourceClient(ABC):
    """
    Colaborador de origen (lectura paginada).
    """

    @abstractmethod
    def fetch(self, request: PageRequest) -> FetchResult:
        """
        Ejecuta una request contra el origen.

        Args:
            request: Request con la pagina a leer

        Returns:
            FetchResult: registros crudos y metadata de paginacion

        Raises:
            SourceHttpError: con status_code (None si no hubo respuesta) y
                retry_after si el servidor lo informo
        """
        pass


class IDestinationReader(ABC):
    """Lectura del destino."""

    @abstractmethod
    def bulk_read(
        self,
        key_field: str,
        projection: Sequence[str],
        limit: int,
    ) -> Iterable[Mapping[str, Any]]:
        """
        Lee como maximo `limit` registros proyectando solo `projection`.

        Cada item es un mapping con `id` y `fields`.
        """
        pass

    @abstractmethod
    def find_by_key(self, key_field: str, key: str) -> Optional[DestinationRecordHandle]:
        """Busca un registro puntual por natural key."""
        pass


class IDestinationWriter(ABC):
    """Escritura en el destino."""

    @abstractmethod
    def create(self, fields: Mapping[str, Any]) -> str:
        """
        Crea un registro y retorna su record_id.

        Raises:
            DuplicateKeyError: si ya existe un registro con la misma natural key
        """
        pass

    @abstractmethod
    def update(self, handle: DestinationRecordHandle, fields: Mapping[str, Any]) -> str:
        """Actualiza el registro referenciado y retorna su record_id."""
        pass


class ICheckpointStore(ABC):
    """Persistencia del checkpoint de sync."""

    @abstractmethod
    def get(self) -> Optional[datetime]:
        """Retorna el ultimo checkpoint persistido, o None si no hay."""
        pass

    @abstractmethod
    def set(self, timestamp: datetime) -> None:
        """Persiste el checkpoint."""
        pass
