"""
Cliente HTTP minimo de la API interna de Fergus (requests).

Requisitos cubiertos:
- credencial inyectada (cookie de sesion), nunca obtenida aqui
- un solo intento por llamada: el reintento vive en RateLimitedFetcher
- errores HTTP/red traducidos a SourceHttpError (status_code, retry_after)
- formas de respuesta heterogeneas resueltas con ExtractorChain
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
from loguru import logger

from fergus_sync.application.services.field_extractors import (
    ExtractorChain,
    FieldExtractor,
    from_path,
    get_path,
)
from fergus_sync.domain.entities.records import FetchResult, PageRequest
from fergus_sync.domain.repositories.collaborators import ISourceClient
from fergus_sync.shared.exceptions.sync import SourceHttpError


DEFAULT_HEADERS: Dict[str, str] = {
    "Content-Type": "application/json",
    "Accept": "*/*",
    "Accept-Language": "en-GB,en;q=0.7",
    "Origin": "https://app.fergus.com",
    "Referer": "https://app.fergus.com/dashboard",
    "X-Device-Type": "desktop",
}


@dataclass(frozen=True)
class FergusCredential:
    """Header Cookie de una sesion valida. Lo provee un colaborador externo."""

    cookie: str

    def headers(self) -> Dict[str, str]:
        return {**DEFAULT_HEADERS, "Cookie": self.cookie}

    def __repr__(self) -> str:
        return "FergusCredential(cookie=***)"


def _list_at(*keys: str) -> FieldExtractor:
    def _extract(payload: Mapping[str, Any]) -> Any:
        value = get_path(payload, *keys)
        return value if isinstance(value, list) else None

    return FieldExtractor(name=".".join(keys), func=_extract)


def _object_at(*keys: str) -> FieldExtractor:
    def _extract(payload: Mapping[str, Any]) -> Any:
        value = get_path(payload, *keys)
        return value if isinstance(value, dict) else None

    return FieldExtractor(name=".".join(keys), func=_extract)


# status_board -> value, invoices -> data / invoices / value
RECORDS_CHAIN = ExtractorChain(
    name="records",
    extractors=(_list_at("value"), _list_at("data"), _list_at("invoices"), _list_at("value", "jobs")),
)

# Endpoints de detalle devuelven un objeto, no una lista
DETAIL_CHAIN = ExtractorChain(name="detail", extractors=(_object_at("value"),))

TOTAL_PAGES_CHAIN = ExtractorChain.of_paths(
    "total_pages", "total_pages", ("paging", "total_pages"), ("meta", "total_pages"), ("meta", "last_page")
)
TOTAL_RECORDS_CHAIN = ExtractorChain.of_paths(
    "total_records", "total_records", ("paging", "total_records"), ("paging", "total"), ("meta", "total")
)
NEXT_PAGE_CHAIN = ExtractorChain(
    name="next_page",
    extractors=(from_path("links", "next"), from_path("meta", "next_page"), from_path("paging", "next_page")),
)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _retry_after(resp: requests.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_fetch_result(payload: Mapping[str, Any], *, paginated: bool = True) -> FetchResult:
    """Normaliza la respuesta JSON de Fergus a FetchResult."""
    if not paginated:
        if payload.get("result") not in (None, "success"):
            return FetchResult(records=(), has_more=False)
        detail = DETAIL_CHAIN.value(payload)
        return FetchResult(records=(detail,) if detail else (), has_more=False)

    records = RECORDS_CHAIN.value(payload, default=[])
    has_more: Optional[bool] = None
    if any(k in payload for k in ("links", "meta")) or get_path(payload, "paging", "next_page") is not None:
        has_more = NEXT_PAGE_CHAIN.extract(payload)[1] is not None

    return FetchResult(
        records=tuple(r for r in records if isinstance(r, dict)),
        has_more=has_more,
        total_pages=_as_int(TOTAL_PAGES_CHAIN.value(payload)),
        total_records=_as_int(TOTAL_RECORDS_CHAIN.value(payload)),
    )


class FergusClient(ISourceClient):
    """
    Colaborador de origen sobre la API v2 de Fergus.

    Convencion de paginacion:
    - POST: `page` y `page_size` van en el body
    - GET: `page` y `per_page` van en la query
    - `page_size == 0` marca un endpoint de detalle (sin paginacion)
    """

    def __init__(
        self,
        credential: FergusCredential,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = "https://app.fergus.com/api/v2",
        timeout_s: float = 30,
    ) -> None:
        self._credential = credential
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    def _build(self, request: PageRequest) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        params = dict(request.params)
        body = dict(request.body) if request.body is not None else None
        if request.page_size > 0:
            if request.method.upper() == "GET":
                params.update({"page": request.page, "per_page": request.page_size})
            else:
                body = body or {}
                body.update({"page": request.page, "page_size": request.page_size})
        return params, body

    def fetch(self, request: PageRequest) -> FetchResult:
        params, body = self._build(request)
        headers = {**self._credential.headers(), **dict(request.headers)}

        try:
            resp = self._session.request(
                method=request.method.upper(),
                url=self._url(request.url),
                params=params or None,
                json=body,
                headers=headers,
                timeout=self._timeout_s,
            )
        except requests.RequestException as e:
            raise SourceHttpError(f"Fergus sin respuesta: {type(e).__name__}: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise SourceHttpError(
                f"Fergus request fallo {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
                retry_after=_retry_after(resp),
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise SourceHttpError(
                f"Fergus devolvio un cuerpo no JSON ({resp.status_code})",
                status_code=resp.status_code,
            ) from e

        if not isinstance(payload, dict):
            payload = {"value": payload}
        result = parse_fetch_result(payload, paginated=request.page_size > 0)
        logger.debug(f"Fergus {request}: {len(result.records)} registros")
        return result
