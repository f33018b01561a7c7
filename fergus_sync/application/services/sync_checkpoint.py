"""
Checkpoint de la ultima corrida exitosa.

Reglas:
- Nunca se adelanta mas alla del inicio de la corrida (CheckpointError), ni al
  escribir ni al leer un valor guardado en el futuro.
- Nunca retrocede: una escritura menor al valor actual se ignora y se loguea.
- Sin checkpoint previo, la ventana arranca en `now - default_lookback`.
"""
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from fergus_sync.domain.repositories.collaborators import ICheckpointStore
from fergus_sync.infrastructure.executor import call_collaborator
from fergus_sync.shared.exceptions.sync import CheckpointError
from fergus_sync.shared.utils.datetime_utils import ensure_utc, to_iso_z, utc_now


class SyncCheckpoint:
    def __init__(
        self,
        store: ICheckpointStore,
        *,
        default_lookback: timedelta = timedelta(hours=24),
        timeout_s: Optional[float] = 30.0,
    ):
        self._store = store
        self._default_lookback = default_lookback
        self._timeout_s = timeout_s

    async def read(self) -> Optional[datetime]:
        try:
            value = await call_collaborator(self._store.get, timeout_s=self._timeout_s)
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(f"No se pudo leer el checkpoint: {type(e).__name__}: {e}") from e
        return ensure_utc(value) if value is not None else None

    async def window_start(self, now: Optional[datetime] = None) -> datetime:
        """
        Inicio de la ventana de cambios para esta corrida.

        Raises:
            CheckpointError: si el checkpoint guardado es posterior a `now`
        """
        now = ensure_utc(now or utc_now())
        current = await self.read()
        if current is not None:
            if current > now:
                raise CheckpointError(
                    f"Checkpoint guardado {to_iso_z(current)} posterior al inicio de la corrida "
                    f"{to_iso_z(now)}: la ventana de cambios quedaria vacia"
                )
            return current
        start = now - self._default_lookback
        logger.info(f"Sin checkpoint previo, se usa ventana por defecto desde {to_iso_z(start)}")
        return start

    async def write(self, checkpoint: datetime, run_started_at: datetime) -> bool:
        """
        Persiste el checkpoint si avanza.

        Returns:
            bool: True si se escribio, False si se ignoro por retroceso

        Raises:
            CheckpointError: si checkpoint > run_started_at, o falla el store
        """
        checkpoint = ensure_utc(checkpoint)
        run_started_at = ensure_utc(run_started_at)
        if checkpoint > run_started_at:
            raise CheckpointError(
                f"Checkpoint {to_iso_z(checkpoint)} posterior al inicio de la corrida "
                f"{to_iso_z(run_started_at)}"
            )

        current = await self.read()
        if current is not None and checkpoint < current:
            logger.warning(
                f"Checkpoint {to_iso_z(checkpoint)} anterior al actual {to_iso_z(current)}: se ignora"
            )
            return False

        try:
            await call_collaborator(self._store.set, checkpoint, timeout_s=self._timeout_s)
        except Exception as e:
            raise CheckpointError(f"No se pudo guardar el checkpoint: {type(e).__name__}: {e}") from e
        logger.info(f"Checkpoint guardado: {to_iso_z(checkpoint)}")
        return True
