"""
Manejadores de eventos de inicio y cierre de una corrida de sync.
"""
from pathlib import Path
from typing import List

from loguru import logger

from fergus_sync.core.config import SyncSettings


_FILE_SINK_IDS: List[int] = []


def configure_logging(config: SyncSettings) -> None:
    """
    Configura el logging de archivo de la corrida.

    Idempotente: si ya hay un sink de archivo registrado no agrega otro.

    Args:
        config: Configuracion del sync (LOG_FILE, LOG_LEVEL)
    """
    if _FILE_SINK_IDS or not config.LOG_FILE:
        return

    Path(config.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(
        config.LOG_FILE,
        rotation="500 MB",
        retention="10 days",
        level=config.LOG_LEVEL
    )
    _FILE_SINK_IDS.append(sink_id)


def startup(config: SyncSettings) -> None:
    """Inicializa logging y valida la configuracion critica."""
    configure_logging(config)
    logger.info(f"Iniciando {config.APP_NAME} v{config.APP_VERSION}")
    logger.info(f"Perfil de sync: {config.SYNC_PROFILE}")
    _validate_config(config)


def _validate_config(config: SyncSettings) -> List[str]:
    """Valida que la configuracion critica este presente."""
    warnings = []

    if not config.FERGUS_COOKIE:
        warnings.append("FERGUS_COOKIE no configurada - las lecturas de Fergus fallaran con 401")
    if not config.AIRTABLE_TOKEN:
        warnings.append("AIRTABLE_TOKEN no configurado - no se podra escribir en Airtable")
    if not config.AIRTABLE_BASE_ID:
        warnings.append("AIRTABLE_BASE_ID no configurado")
    if config.MAX_BACKOFF_S < config.MIN_BACKOFF_S:
        warnings.append("MAX_BACKOFF_S es menor que MIN_BACKOFF_S - se usara MAX_BACKOFF_S")

    for warning in warnings:
        logger.warning(f"CONFIG: {warning}")
    return warnings


def shutdown() -> None:
    """Libera los sinks de archivo registrados."""
    logger.info("Cerrando sync...")
    while _FILE_SINK_IDS:
        logger.remove(_FILE_SINK_IDS.pop())
