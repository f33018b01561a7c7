"""
Ejecutor de llamadas a colaboradores externos.

Los clientes concretos (requests, psycopg, archivos) son bloqueantes. Este
modulo los corre en un ThreadPoolExecutor dedicado para no bloquear el event
loop, y aplica un timeout a nivel asyncio a toda llamada, sea bloqueante o
corrutina.

Uso:
    from fergus_sync.infrastructure.executor import call_collaborator

    result = await call_collaborator(client.fetch, request, timeout_s=30)
"""
import asyncio
import atexit
import inspect
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Optional, TypeVar

from loguru import logger


T = TypeVar("T")

# Cubre los pools de lectura y escritura del perfil "fast" con holgura.
COLLABORATOR_MAX_WORKERS = 16

_collaborator_executor = ThreadPoolExecutor(
    max_workers=COLLABORATOR_MAX_WORKERS,
    thread_name_prefix="sync-io-"
)


def _shutdown_executor() -> None:
    """Cierra el executor de colaboradores al terminar el proceso."""
    logger.debug("Cerrando ThreadPoolExecutor de colaboradores...")
    _collaborator_executor.shutdown(wait=True)


atexit.register(_shutdown_executor)


async def call_collaborator(
    func: Callable[..., T],
    *args: Any,
    timeout_s: Optional[float] = None,
    wait_for_late_result: bool = False,
    **kwargs: Any
) -> T:
    """
    Invoca un colaborador con timeout.

    Un thread del pool no se puede interrumpir: al vencer el timeout la
    llamada bloqueante sigue corriendo. Con `wait_for_late_result` se espera
    a que el thread termine y se retorna (o levanta) su resultado real, asi
    quien llama no libera su cupo de concurrencia con la llamada aun en vuelo.

    Args:
        func: Funcion sincrona o corrutina del colaborador
        *args: Argumentos posicionales
        timeout_s: Timeout maximo en segundos (None = sin limite)
        wait_for_late_result: Esperar al thread si vence el timeout
        **kwargs: Argumentos con nombre

    Returns:
        El resultado del colaborador

    Raises:
        asyncio.TimeoutError: Si la llamada excede el timeout
        Cualquier excepcion que el colaborador lance
    """
    if inspect.iscoroutinefunction(func):
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_s)

    if kwargs:
        func = partial(func, **kwargs)

    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(_collaborator_executor, func, *args)
    pending = asyncio.shield(future) if wait_for_late_result else future
    try:
        result = await asyncio.wait_for(pending, timeout=timeout_s)
    except asyncio.TimeoutError:
        if not wait_for_late_result:
            logger.warning(f"Timeout ({timeout_s}s) en llamada a colaborador: {func}")
            raise
        logger.warning(
            f"Timeout ({timeout_s}s) en llamada a colaborador: {func}. "
            f"Se espera a que el thread termine"
        )
        result = await future
        logger.warning(f"Llamada a colaborador completada tras el timeout: {func}")

    # Callables que retornan un awaitable (p.ej. lambdas sobre corrutinas)
    if inspect.isawaitable(result):
        return await asyncio.wait_for(result, timeout=timeout_s)
    return result
