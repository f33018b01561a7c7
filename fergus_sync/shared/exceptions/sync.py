"""
Excepciones del motor de sincronización incremental.

Regla de propagación:
- Errores locales a un registro o a una página se absorben y quedan en el RunReport.
- Solo AuthExpiredError (credencial inválida/expirada) o la cancelación cortan la corrida.
"""
from typing import Any, Optional

from fergus_sync.shared.exceptions.base import AppException


class SyncEngineError(AppException):
    """Excepción base para errores del motor de sync."""

    def __init__(self, message: str, error_code: str = "SYNC_ERROR", details=None):
        super().__init__(
            message=message,
            error_code=error_code,
            details=details
        )


class SyncConfigError(SyncEngineError):
    """Error de configuración del pipeline."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else None
        super().__init__(
            message=message,
            error_code="SYNC_CONFIG_ERROR",
            details=details
        )


class SourceHttpError(SyncEngineError):
    """
    Error HTTP (o de red) reportado por el colaborador de origen.

    status_code es None cuando no hubo respuesta (timeout, conexión caída).
    El flag `retryable` permite al fetcher aplicar backoff solo donde corresponde.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(
            message=message,
            error_code="SOURCE_HTTP_ERROR",
            details={"status_code": status_code, "retry_after": retry_after}
        )

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or 500 <= self.status_code < 600

    @property
    def auth_expired(self) -> bool:
        return self.status_code in (401, 403)


class AuthExpiredError(SyncEngineError):
    """
    La credencial inyectada ya no es válida (401/403).

    No se reintenta localmente: aborta la corrida. Si el scheduler ya había
    empezado, `report` contiene el RunReport sellado con lo procesado.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, report: Any = None):
        self.status_code = status_code
        self.report = report
        super().__init__(
            message=message,
            error_code="AUTH_EXPIRED",
            details={"status_code": status_code}
        )


class TransientFetchError(SyncEngineError):
    """Se agotaron los reintentos para una request de lectura (429/5xx/red)."""

    def __init__(self, request: Any, attempts: int, last_error: Optional[BaseException] = None):
        self.request = request
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            message=f"Request {request} falló tras {attempts} intentos: {last_error}",
            error_code="TRANSIENT_FETCH_ERROR",
            details={"request": str(request), "attempts": attempts}
        )


class SourceRequestError(SyncEngineError):
    """Error no recuperable (4xx distinto de 401/403/429) en una request de lectura."""

    def __init__(self, request: Any, status_code: Optional[int], message: str = ""):
        self.request = request
        self.status_code = status_code
        super().__init__(
            message=f"Request {request} rechazada ({status_code}): {message}",
            error_code="SOURCE_REQUEST_ERROR",
            details={"request": str(request), "status_code": status_code}
        )


class DestinationIndexBuildError(SyncEngineError):
    """Falló la lectura masiva del destino; el índice se degrada a vacío."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(
            message=f"No se pudo construir el índice de destino: {type(cause).__name__}: {cause}",
            error_code="DESTINATION_INDEX_BUILD_ERROR",
        )


class DuplicateKeyError(SyncEngineError):
    """El destino ya tiene un registro con esa natural key (creado concurrentemente)."""

    def __init__(self, natural_key: str):
        self.natural_key = natural_key
        super().__init__(
            message=f"Ya existe un registro con natural key '{natural_key}'",
            error_code="DUPLICATE_KEY",
            details={"natural_key": natural_key}
        )


class RecordWriteError(SyncEngineError):
    """Fallo de create/update para un registro puntual."""

    def __init__(self, natural_key: str, action: str, cause: Optional[BaseException] = None):
        self.natural_key = natural_key
        self.action = action
        self.cause = cause
        super().__init__(
            message=f"Error en {action} de '{natural_key}': {cause}",
            error_code="RECORD_WRITE_ERROR",
            details={"natural_key": natural_key, "action": action}
        )


class CheckpointError(SyncEngineError):
    """Error leyendo/escribiendo el checkpoint, o intento de adelantarlo."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="CHECKPOINT_ERROR")


class ReportSealedError(SyncEngineError):
    """Se intentó modificar un RunReport ya sellado."""

    def __init__(self, entity: str):
        super().__init__(
            message=f"El reporte de '{entity}' ya fue sellado",
            error_code="REPORT_SEALED",
        )
