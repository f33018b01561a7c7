from __future__ import annotations

from fergus_sync.application.services.field_extractors import (
    ExtractorChain,
    FieldExtractor,
    from_path,
    get_path,
    is_usable,
)


def test_is_usable() -> None:
    assert is_usable(0)
    assert is_usable(False)
    assert not is_usable(None)
    assert not is_usable("  ")
    assert not is_usable([])
    assert not is_usable({})


def test_get_path_navigates_dicts_and_lists() -> None:
    payload = {"value": {"jobs": [{"id": 7}]}}

    assert get_path(payload, "value", "jobs", 0, "id") == 7
    assert get_path(payload, "value", "jobs", 5, "id") is None
    assert get_path(payload, "value", "missing", default="x") == "x"
    assert get_path(payload, "value", "jobs", "id") is None


def test_chain_returns_first_usable_value_and_its_name() -> None:
    chain = ExtractorChain.of_paths("job_id", "job_id", ("job", "id"), "id")

    assert chain.extract({"job_id": "", "job": {"id": 12}, "id": 99}) == (12, "job.id")
    assert chain.extract({"other": 1}) == (None, None)
    assert chain.value({"other": 1}, default="n/a") == "n/a"


def test_failing_extractor_counts_as_missing() -> None:
    def _boom(payload):
        raise KeyError("x")

    chain = ExtractorChain(name="id", extractors=(FieldExtractor("boom", _boom), from_path("id")))

    assert chain.extract({"id": 3}) == (3, "id")


def test_transform_is_applied_only_to_usable_values() -> None:
    extractor = from_path("total", transform=float)

    assert extractor.extract({"total": "12.5"}) == 12.5
    assert extractor.extract({"total": ""}) == ""


def test_then_appends_lower_priority_extractors() -> None:
    chain = ExtractorChain.of_paths("key", "internal_id").then([from_path("id")])

    assert chain.extract({"id": 1}) == (1, "id")
    assert [e.name for e in chain.extractors] == ["internal_id", "id"]
