"""
Lector paginado con limite de concurrencia y ritmo contra el origen.

Reglas:
- Como maximo `max_concurrency` requests en vuelo (pool de slots).
- Dos despachos consecutivos sobre el mismo slot quedan separados por al
  menos `inter_request_delay_s`.
- 429 / 5xx / red / timeout: se reintenta la request puntual con backoff
  exponencial (o Retry-After) hasta `max_retries`; luego TransientFetchError.
- 401 / 403: AuthExpiredError, nunca se reintenta.
- Otros 4xx: SourceRequestError (pagina fallida, no recuperable).

Es el unico lugar del motor que reintenta lecturas del origen.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from loguru import logger

from fergus_sync.core.config import SyncSettings
from fergus_sync.domain.entities.records import Page, PageRequest
from fergus_sync.domain.repositories.collaborators import ISourceClient
from fergus_sync.infrastructure.executor import call_collaborator
from fergus_sync.shared.exceptions.sync import (
    AuthExpiredError,
    SourceHttpError,
    SourceRequestError,
    SyncConfigError,
    TransientFetchError,
)


Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class FetchConfig:
    max_concurrency: int = 2
    inter_request_delay_s: float = 0.5
    max_pages: int = 10
    max_retries: int = 5
    min_backoff_s: float = 0.8
    max_backoff_s: float = 20.0
    timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise SyncConfigError("max_concurrency debe ser > 0", field="max_concurrency")
        if self.inter_request_delay_s < 0:
            raise SyncConfigError("inter_request_delay_s debe ser >= 0", field="inter_request_delay_s")
        if self.max_pages <= 0:
            raise SyncConfigError("max_pages debe ser > 0", field="max_pages")
        if self.max_retries < 0:
            raise SyncConfigError("max_retries debe ser >= 0", field="max_retries")

    @classmethod
    def from_settings(cls, config: SyncSettings) -> "FetchConfig":
        return cls(
            max_concurrency=config.MAX_CONCURRENCY_FETCH,
            inter_request_delay_s=config.INTER_REQUEST_DELAY_MS / 1000.0,
            max_pages=config.MAX_PAGES,
            max_retries=config.MAX_RETRIES,
            min_backoff_s=config.MIN_BACKOFF_S,
            max_backoff_s=config.MAX_BACKOFF_S,
            timeout_s=config.REQUEST_TIMEOUT_S,
        )

    def backoff_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Espera antes del reintento `attempt` (0-based).

        - Retry-After del servidor si existe.
        - Si no, exponencial acotada + 15% de jitter proporcional.
        """
        if retry_after is not None and retry_after >= 0:
            return float(retry_after)
        base = min(self.max_backoff_s, self.min_backoff_s * (2 ** attempt))
        return base + (0.15 * base)


class _Slot:
    """Slot del pool. Recuerda cuando fue su ultimo despacho."""

    __slots__ = ("index", "last_dispatch")

    def __init__(self, index: int):
        self.index = index
        self.last_dispatch: Optional[float] = None


class RateLimitedFetcher:
    """
    Fetcher compartido por las estrategias de lectura y el enriquecimiento.

    `sleep` y `clock` son inyectables para tests.
    """

    def __init__(
        self,
        source: ISourceClient,
        config: Optional[FetchConfig] = None,
        *,
        sleep: Optional[Sleep] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._source = source
        self._config = config or FetchConfig()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._slots: "asyncio.Queue[_Slot]" = asyncio.Queue()
        for i in range(self._config.max_concurrency):
            self._slots.put_nowait(_Slot(i))
        self._in_flight = 0
        self.max_in_flight = 0
        self.requests_sent = 0

    @property
    def config(self) -> FetchConfig:
        return self._config

    async def _dispatch(self, request: PageRequest):
        slot = await self._slots.get()
        try:
            if slot.last_dispatch is not None:
                wait_s = slot.last_dispatch + self._config.inter_request_delay_s - self._clock()
                if wait_s > 0:
                    await self._sleep(wait_s)
            slot.last_dispatch = self._clock()

            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            self.requests_sent += 1
            try:
                return await call_collaborator(
                    self._source.fetch,
                    request,
                    timeout_s=self._config.timeout_s,
                )
            finally:
                self._in_flight -= 1
        finally:
            self._slots.put_nowait(slot)

    async def fetch_page(self, request: PageRequest) -> Page:
        """
        Lee una pagina aplicando reintentos.

        Raises:
            AuthExpiredError: 401/403
            TransientFetchError: reintentos agotados
            SourceRequestError: 4xx no recuperable
        """
        attempts = 0
        last_error: Optional[BaseException] = None

        while True:
            attempts += 1
            retry_after: Optional[float] = None
            try:
                result = await self._dispatch(request)
                return Page(
                    request=request,
                    records=tuple(result.records),
                    has_more=result.has_more,
                    total_pages=result.total_pages,
                    total_records=result.total_records,
                )
            except SourceHttpError as e:
                if e.auth_expired:
                    logger.error(f"Credencial rechazada ({e.status_code}) en {request}")
                    raise AuthExpiredError(
                        f"El origen rechazo la credencial ({e.status_code})",
                        status_code=e.status_code,
                    ) from e
                if not e.retryable:
                    raise SourceRequestError(request, e.status_code, e.message) from e
                last_error = e
                retry_after = e.retry_after
            except asyncio.TimeoutError as e:
                last_error = e
            except ConnectionError as e:
                last_error = e
            except Exception as e:
                raise SourceRequestError(request, None, f"{type(e).__name__}: {e}") from e

            if attempts > self._config.max_retries:
                logger.warning(f"Reintentos agotados para {request} ({attempts} intentos): {last_error}")
                raise TransientFetchError(request, attempts, last_error) from last_error

            delay = self._config.backoff_for(attempts - 1, retry_after)
            logger.debug(
                f"Reintento {attempts}/{self._config.max_retries} de {request} "
                f"en {delay:.2f}s ({type(last_error).__name__})"
            )
            await self._sleep(delay)

    async def fetch_all(
        self,
        first_request: PageRequest,
        *,
        skip_failed_pages: bool = False,
    ) -> AsyncIterator[Page]:
        """
        Itera paginas en orden hasta la primera condicion de corte.

        Corta en pagina vacia, has_more == False, total_pages alcanzado o
        max_pages (tope duro). Al llegar al tope se entrega una pagina vacia
        con `page_cap_reached` para la primera pagina sin leer. Con
        `skip_failed_pages` una pagina fallida se entrega con `error` y se
        continua con la siguiente.
        """
        request = first_request
        total_pages: Optional[int] = None

        for _ in range(self._config.max_pages):
            try:
                page = await self.fetch_page(request)
            except (TransientFetchError, SourceRequestError) as e:
                if not skip_failed_pages:
                    raise
                logger.warning(f"Pagina fallida, se continua con la siguiente: {request}")
                yield Page(request=request, error=e)
                if total_pages is not None and request.page >= total_pages:
                    return
                request = request.for_page(request.page + 1)
                continue

            if not page.records:
                return

            yield page

            if page.total_pages:
                total_pages = page.total_pages
            if page.has_more is False:
                return
            if total_pages is not None and page.number >= total_pages:
                return
            request = request.for_page(request.page + 1)

        logger.warning(
            f"Se alcanzo el tope de {self._config.max_pages} paginas para "
            f"{first_request.label or first_request.url}"
        )
        yield Page(request=request, page_cap_reached=True)
