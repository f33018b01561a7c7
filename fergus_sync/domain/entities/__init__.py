"""
Entidades del dominio.
"""
from fergus_sync.domain.entities.records import (
    ChangeSet,
    DestinationRecordHandle,
    FetchResult,
    Page,
    PageRequest,
    SourceRecord,
)
from fergus_sync.domain.entities.run_report import (
    BatchJobOutcome,
    FailedRecord,
    OutcomeTag,
    ReconciliationAmbiguity,
    RunCondition,
    RunReport,
    RunReportBuilder,
)

__all__ = [
    "ChangeSet",
    "DestinationRecordHandle",
    "FetchResult",
    "Page",
    "PageRequest",
    "SourceRecord",
    "BatchJobOutcome",
    "FailedRecord",
    "OutcomeTag",
    "ReconciliationAmbiguity",
    "RunCondition",
    "RunReport",
    "RunReportBuilder",
]
