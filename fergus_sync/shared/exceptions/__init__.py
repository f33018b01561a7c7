"""
Excepciones del motor de sincronización.
"""
from fergus_sync.shared.exceptions.base import AppException
from fergus_sync.shared.exceptions.sync import (
    AuthExpiredError,
    CheckpointError,
    DestinationIndexBuildError,
    DuplicateKeyError,
    RecordWriteError,
    ReportSealedError,
    SourceHttpError,
    SourceRequestError,
    SyncConfigError,
    SyncEngineError,
    TransientFetchError,
)

__all__ = [
    "AppException",
    "AuthExpiredError",
    "CheckpointError",
    "DestinationIndexBuildError",
    "DuplicateKeyError",
    "RecordWriteError",
    "ReportSealedError",
    "SourceHttpError",
    "SourceRequestError",
    "SyncConfigError",
    "SyncEngineError",
    "TransientFetchError",
]
