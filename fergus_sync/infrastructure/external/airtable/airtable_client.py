"""
Cliente mínimo de Airtable REST API (sin SDKs externos).

Requisitos cubiertos:
- requests
- paginación por offset
- rate-limit/backoff (429, 5xx) propio del destino
- lectura masiva proyectada (fields[]) para el índice de destino
- búsqueda puntual por natural key (filterByFormula)
- create / update de a un registro
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import requests
from loguru import logger

from fergus_sync.domain.entities.records import DestinationRecordHandle
from fergus_sync.domain.repositories.collaborators import IDestinationReader, IDestinationWriter


@dataclass(frozen=True)
class AirtableCredentials:
    token: str
    base_id: str


class AirtableApiError(RuntimeError):
    """Error de integración con Airtable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _escape_formula_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_key_filter_formula(key_field: str, key: str) -> str:
    """
    Fórmula Airtable para buscar por natural key exacta.

    Ej: {Job ID} = "NW-1234"
    """
    field_ref = "{" + key_field + "}"
    return f'{field_ref} = "{_escape_formula_value(key)}"'


class AirtableClient(IDestinationReader, IDestinationWriter):
    """
    Cliente HTTP de Airtable para una tabla.

    Importante:
    - No hace cast de tipos: los valores llegan ya mapeados (typecast=True
      deja que Airtable convierta selects y fechas).
    - No existe restricción de unicidad en Airtable, así que create nunca
      levanta DuplicateKeyError: la unicidad la garantiza el índice.
    """

    def __init__(
        self,
        credentials: AirtableCredentials,
        table_name: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = "https://api.airtable.com/v0",
        timeout_s: float = 30,
        max_retries: int = 6,
        min_backoff_s: float = 0.8,
        max_backoff_s: float = 20.0,
        page_size: int = 100,
        call_budget_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._creds = credentials
        self._table_name = table_name
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._min_backoff_s = min_backoff_s
        self._max_backoff_s = max_backoff_s
        self._page_size = page_size
        self._call_budget_s = call_budget_s
        self._clock = clock
        self._session = session or requests.Session()

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def _table_url(self) -> str:
        return f"{self._base_url}/{self._creds.base_id}/{self._table_name}"

    def iter_records(
        self,
        *,
        fields: Optional[Sequence[str]] = None,
        filter_formula: Optional[str] = None,
        max_records: Optional[int] = None,
    ) -> Iterable[Mapping[str, Any]]:
        """
        Itera registros crudos ({"id", "fields"}) manejando paginación por 'offset'.
        """
        offset: Optional[str] = None

        while True:
            # Airtable permite repetir "fields[]" en querystring.
            # requests lo serializa correctamente pasando lista de tuplas.
            query: list[tuple[str, Any]] = [("pageSize", self._page_size)]
            if filter_formula:
                query.append(("filterByFormula", filter_formula))
            if max_records:
                query.append(("maxRecords", max_records))
            if offset:
                query.append(("offset", offset))
            for f in fields or ():
                query.append(("fields[]", f))

            payload = self._request_json("GET", self._table_url, query=query)

            for rec in payload.get("records") or []:
                if not rec.get("id"):
                    # Caso raro; preferimos fallar temprano y visible.
                    raise AirtableApiError("Airtable devolvió un record sin 'id'")
                yield {"id": rec["id"], "fields": rec.get("fields") or {}}

            offset = payload.get("offset")
            if not offset:
                break

    def bulk_read(
        self,
        key_field: str,
        projection: Sequence[str],
        limit: int,
    ) -> list[Mapping[str, Any]]:
        rows = list(self.iter_records(fields=list(projection), max_records=limit))
        logger.debug(f"Airtable '{self._table_name}': {len(rows)} registros leídos para el índice")
        return rows[:limit]

    def find_by_key(self, key_field: str, key: str) -> Optional[DestinationRecordHandle]:
        rows = list(
            self.iter_records(
                filter_formula=build_key_filter_formula(key_field, key),
                max_records=10,
            )
        )
        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(f"Airtable '{self._table_name}': {len(rows)} registros con {key_field}='{key}'")
        row = min(rows, key=lambda r: r["id"])
        return DestinationRecordHandle(record_id=row["id"], natural_key=key, snapshot=row["fields"])

    def create(self, fields: Mapping[str, Any]) -> str:
        payload = self._request_json(
            "POST", self._table_url, body={"fields": dict(fields), "typecast": True}
        )
        return payload["id"]

    def update(self, handle: DestinationRecordHandle, fields: Mapping[str, Any]) -> str:
        payload = self._request_json(
            "PATCH",
            f"{self._table_url}/{handle.record_id}",
            body={"fields": dict(fields), "typecast": True},
        )
        return payload.get("id") or handle.record_id

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        query: Optional[list[tuple[str, Any]]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Request HTTP con backoff para 429/5xx.

        Estrategia:
        - 429: respeta Retry-After si existe, si no exponencial con jitter simple.
        - 5xx: exponencial con jitter.
        - 4xx (no 429): error inmediato (config/auth mal).
        - Con `call_budget_s`, timeouts y esperas de todos los intentos caben
          en ese presupuesto: no se reintenta si la espera lo excederia.
        """
        headers = {
            "Authorization": f"Bearer {self._creds.token}",
            "Content-Type": "application/json",
        }

        deadline = self._clock() + self._call_budget_s if self._call_budget_s else None

        for attempt in range(self._max_retries + 1):
            timeout_s = self._timeout_s
            if deadline is not None:
                timeout_s = min(timeout_s, deadline - self._clock())
                if timeout_s <= 0:
                    raise AirtableApiError(f"Airtable: presupuesto de {self._call_budget_s}s agotado")

            resp = self._session.request(
                method=method,
                url=url,
                params=query,
                json=body,
                headers=headers,
                timeout=timeout_s,
            )

            if 200 <= resp.status_code < 300:
                return resp.json()

            # Errores recuperables
            if resp.status_code == 429 or 500 <= resp.status_code < 600:
                if attempt >= self._max_retries:
                    raise AirtableApiError(
                        f"Airtable error {resp.status_code} tras {attempt} reintentos: {resp.text}",
                        status_code=resp.status_code,
                    )

                retry_after = resp.headers.get("Retry-After")
                if retry_after:
                    try:
                        sleep_s = float(retry_after)
                    except ValueError:
                        sleep_s = self._min_backoff_s
                else:
                    # Exponencial simple + jitter proporcional
                    base = min(self._max_backoff_s, self._min_backoff_s * (2**attempt))
                    sleep_s = base + (0.15 * base)

                if deadline is not None and self._clock() + sleep_s >= deadline:
                    raise AirtableApiError(
                        f"Airtable error {resp.status_code}: reintentar excede el presupuesto "
                        f"de {self._call_budget_s}s",
                        status_code=resp.status_code,
                    )

                time.sleep(sleep_s)
                continue

            # Errores no recuperables
            raise AirtableApiError(
                f"Airtable request falló {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )

        raise AirtableApiError("Airtable request sin respuesta")
