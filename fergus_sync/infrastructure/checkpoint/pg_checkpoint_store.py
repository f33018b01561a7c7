"""
Checkpoint en Postgres (psycopg v3), tabla sync_state.

Una fila por (source, entity). El UPDATE usa GREATEST para que la base
tampoco acepte retrocesos si dos procesos escriben a la vez.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from fergus_sync.domain.repositories.collaborators import ICheckpointStore
from fergus_sync.shared.utils.datetime_utils import ensure_utc


class PostgresCheckpointStore(ICheckpointStore):
    def __init__(self, dsn: str, *, source: str = "fergus", entity: str = "jobs") -> None:
        self._dsn = dsn
        self._source = source
        self._entity = entity
        self._table_ready = False

    def connect(self) -> psycopg.Connection:
        """
        Abre conexion (autocommit False). El caller controla commits.
        """
        try:
            return psycopg.connect(self._dsn, row_factory=dict_row)
        except psycopg.OperationalError as e:
            raise psycopg.OperationalError(
                f"{e}\n"
                f"Sugerencia: verifica que DATABASE_URL sea accesible desde donde ejecutas el sync."
            ) from e

    def ensure_sync_state_table(self, conn: psycopg.Connection) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    source      TEXT        NOT NULL,
                    entity      TEXT        NOT NULL,
                    last_sync   TIMESTAMPTZ NOT NULL,
                    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (source, entity)
                );
                """
            )
        self._table_ready = True

    def get(self) -> Optional[datetime]:
        with self.connect() as conn:
            if not self._table_ready:
                self.ensure_sync_state_table(conn)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT last_sync
                    FROM sync_state
                    WHERE source = %s
                      AND entity = %s
                    """,
                    (self._source, self._entity),
                )
                row = cur.fetchone()
            conn.commit()
        if not row:
            return None
        return ensure_utc(row["last_sync"])

    def set(self, timestamp: datetime) -> None:
        with self.connect() as conn:
            if not self._table_ready:
                self.ensure_sync_state_table(conn)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_state (source, entity, last_sync)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (source, entity)
                    DO UPDATE SET
                        last_sync = GREATEST(sync_state.last_sync, EXCLUDED.last_sync),
                        updated_at = now()
                    """,
                    (self._source, self._entity, ensure_utc(timestamp)),
                )
            conn.commit()
