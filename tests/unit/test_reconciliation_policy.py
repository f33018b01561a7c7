from __future__ import annotations

from fergus_sync.application.services.destination_index import DestinationIndex
from fergus_sync.application.services.reconciliation_policy import (
    ALREADY_COMPLETE,
    Action,
    ReconciliationPolicy,
    fields_populated,
)
from fergus_sync.domain.entities.records import DestinationRecordHandle, SourceRecord


def _index(*handles: DestinationRecordHandle) -> DestinationIndex:
    return DestinationIndex("Key", handles)


def test_missing_record_is_created() -> None:
    decision = ReconciliationPolicy(fields_populated("Status")).decide(SourceRecord("A", {}), _index())

    assert decision.action is Action.CREATE
    assert decision.handle is None
    assert decision.writes


def test_complete_record_is_skipped() -> None:
    handle = DestinationRecordHandle("rec1", "A", {"Status": "Paid", "Total": 10})
    policy = ReconciliationPolicy(fields_populated("Status", "Total"))

    decision = policy.decide(SourceRecord("A", {}), _index(handle))

    assert decision.action is Action.SKIP
    assert decision.reason == ALREADY_COMPLETE
    assert decision.handle is handle
    assert not decision.writes


def test_incomplete_record_is_updated() -> None:
    handle = DestinationRecordHandle("rec1", "A", {"Status": "  ", "Total": 10})
    policy = ReconciliationPolicy(fields_populated("Status", "Total"))

    decision = policy.decide(SourceRecord("A", {}), _index(handle))

    assert decision.action is Action.UPDATE
    assert decision.handle is handle


def test_without_predicate_existing_records_are_always_updated() -> None:
    handle = DestinationRecordHandle("rec1", "A", {"Status": "Paid"})
    policy = ReconciliationPolicy()

    assert policy.decide(SourceRecord("A", {}), _index(handle)).action is Action.UPDATE
    assert policy.projection_fields == ()


def test_projection_fields_come_from_predicate() -> None:
    policy = ReconciliationPolicy(fields_populated("Invoice Status", "Total", "Done"))

    assert policy.projection_fields == ("Invoice Status", "Total", "Done")


def test_false_boolean_counts_as_populated() -> None:
    """Un checkbox en False tiene valor: solo None y vacios son incompletos."""
    handle = DestinationRecordHandle("rec1", "A", {"Done": False})

    assert fields_populated("Done")(handle)
    assert not fields_populated("Done")(DestinationRecordHandle("rec2", "B", {"Done": None}))
