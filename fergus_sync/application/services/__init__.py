"""
Servicios de aplicacion.

Piezas del motor de sync que no dependen de un origen o destino concreto.
"""
from fergus_sync.application.services.batch_upsert_scheduler import (
    BatchUpsertScheduler,
    SchedulerConfig,
)
from fergus_sync.application.services.change_set_resolver import (
    ChangeSetResolver,
    MergePolicy,
    RecordKeying,
)
from fergus_sync.application.services.destination_index import DestinationIndex
from fergus_sync.application.services.field_extractors import ExtractorChain, FieldExtractor
from fergus_sync.application.services.reconciliation_policy import (
    Action,
    Decision,
    ReconciliationPolicy,
    fields_populated,
)
from fergus_sync.application.services.sync_checkpoint import SyncCheckpoint

__all__ = [
    "BatchUpsertScheduler",
    "SchedulerConfig",
    "ChangeSetResolver",
    "MergePolicy",
    "RecordKeying",
    "DestinationIndex",
    "ExtractorChain",
    "FieldExtractor",
    "Action",
    "Decision",
    "ReconciliationPolicy",
    "fields_populated",
    "SyncCheckpoint",
]
