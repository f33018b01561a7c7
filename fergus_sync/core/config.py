"""
Configuracion central del motor de sync.
Gestiona variables de entorno y configuraciones globales.

Todas las constantes de ritmo/concurrencia viven aqui con su default
documentado. Los presets "fast" y "safe" son perfiles de configuracion
(SYNC_PROFILE), no caminos de codigo distintos.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings

from fergus_sync.shared.exceptions.sync import SyncConfigError


# Perfiles nombrados. Solo sobreescriben campos que no vinieron explicitamente
# en el entorno.
SYNC_PROFILES: Dict[str, Dict[str, Any]] = {
    "default": {},
    "fast": {
        "MAX_CONCURRENCY_WRITE": 10,
        "INTER_TASK_DELAY_MS": 50,
        "BATCH_SIZE": 50,
        "INTER_BATCH_DELAY_MS": 500,
        "PAGE_SIZE": 50,
    },
    "safe": {
        "MAX_CONCURRENCY_FETCH": 1,
        "MAX_CONCURRENCY_WRITE": 2,
        "INTER_TASK_DELAY_MS": 500,
        "BATCH_SIZE": 5,
        "INTER_BATCH_DELAY_MS": 2000,
    },
}


class SyncSettings(BaseSettings):
    """
    Clase de configuracion del sync Fergus -> Airtable.
    Lee variables de entorno (y .env) y proporciona valores por defecto.
    """

    APP_NAME: str = Field(default="Fergus Airtable Sync")
    APP_VERSION: str = Field(default="1.0.0")
    SYNC_PROFILE: str = Field(default="default")

    # Origen (Fergus). La credencial la entrega un colaborador externo.
    FERGUS_BASE_URL: str = Field(default="https://app.fergus.com/api/v2")
    FERGUS_COOKIE: str = Field(default="")

    # Destino (Airtable)
    AIRTABLE_TOKEN: str = Field(default="")
    AIRTABLE_BASE_ID: str = Field(default="")
    AIRTABLE_BASE_URL: str = Field(default="https://api.airtable.com/v0")
    AIRTABLE_JOBS_TABLE: str = Field(default="Jobs")
    AIRTABLE_INVOICES_TABLE: str = Field(default="Invoices")

    # Lectura del origen
    MAX_CONCURRENCY_FETCH: int = Field(default=2, gt=0)
    INTER_REQUEST_DELAY_MS: int = Field(default=500, ge=0)
    MAX_PAGES: int = Field(default=10, gt=0)
    PAGE_SIZE: int = Field(default=20, gt=0)
    MAX_RETRIES: int = Field(default=5, ge=0)
    MIN_BACKOFF_S: float = Field(default=0.8, ge=0)
    MAX_BACKOFF_S: float = Field(default=20.0, ge=0)
    REQUEST_TIMEOUT_S: float = Field(default=30.0, gt=0)

    # Escritura en destino
    MAX_CONCURRENCY_WRITE: int = Field(default=5, gt=0)
    INTER_TASK_DELAY_MS: int = Field(default=100, ge=0)
    BATCH_SIZE: int = Field(default=20, gt=0)
    INTER_BATCH_DELAY_MS: int = Field(default=1000, ge=0)
    WRITE_TIMEOUT_S: float = Field(default=30.0, gt=0)
    DESTINATION_INDEX_MAX_RECORDS: int = Field(default=50000, gt=0)
    DESTINATION_INDEX_TIMEOUT_S: float = Field(default=600.0, gt=0)

    # Deteccion de cambios y checkpoint
    FULL_RESYNC_FALLBACK_THRESHOLD: float = Field(default=0.10, ge=0, le=1)
    DEFAULT_LOOKBACK_HOURS: int = Field(default=24, gt=0)
    ADVANCE_CHECKPOINT_ON_PARTIAL_FAILURE: bool = Field(default=True)
    CHECKPOINT_DIR: str = Field(default="data")
    # Si se define, el checkpoint se guarda en Postgres (tabla sync_state)
    DATABASE_URL: str = Field(default="")

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str = Field(default="logs/sync.log")
    REPORT_DIR: str = Field(default="data/reports")

    def with_profile(self, profile: Optional[str] = None) -> "SyncSettings":
        """
        Retorna una copia con el perfil aplicado.

        Los campos seteados explicitamente (env/.env/kwargs) tienen prioridad
        sobre el perfil.
        """
        name = (profile or self.SYNC_PROFILE).lower()
        if name not in SYNC_PROFILES:
            raise SyncConfigError(
                f"Perfil de sync desconocido: '{name}'. Opciones: {sorted(SYNC_PROFILES)}",
                field="SYNC_PROFILE",
            )
        overrides = {
            key: value
            for key, value in SYNC_PROFILES[name].items()
            if key not in self.model_fields_set
        }
        overrides["SYNC_PROFILE"] = name
        return self.model_copy(update=overrides)

    @computed_field
    @property
    def default_lookback(self) -> timedelta:
        """Ventana usada en la primera corrida (sin checkpoint previo)."""
        return timedelta(hours=self.DEFAULT_LOOKBACK_HOURS)

    @computed_field
    @property
    def uses_postgres_checkpoint(self) -> bool:
        """Indica si el checkpoint se persiste en Postgres en vez de archivo."""
        return bool(self.DATABASE_URL)

    class Config:
        """Configuracion de Pydantic."""
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra del .env


# Instancia global de configuracion
settings = SyncSettings()
