"""
Tests unitarios para fergus_client.py y request_builders.py.

La sesion HTTP se reemplaza por un MagicMock: no hay red.
"""
from __future__ import annotations

from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
import requests

from fergus_sync.domain.entities.records import PageRequest
from fergus_sync.infrastructure.external.fergus.fergus_client import (
    FergusClient,
    FergusCredential,
    parse_fetch_result,
)
from fergus_sync.infrastructure.external.fergus.request_builders import (
    FergusInvoiceRequests,
    FergusJobRequests,
)
from fergus_sync.shared.exceptions.sync import SourceHttpError
from tests.fakes import utc


def _response(status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.text = str(payload)
    resp.json.return_value = payload
    return resp


def _client(resp: MagicMock) -> tuple:
    session = MagicMock()
    session.request.return_value = resp
    client = FergusClient(FergusCredential(cookie="session=abc"), session=session, base_url="https://fergus.test/api/v2/")
    return client, session


class TestParseFetchResult:
    """Tests de normalizacion de respuestas."""

    def test_status_board_shape(self) -> None:
        result = parse_fetch_result({"value": [{"internal_id": "NW-1"}, "basura"], "total_pages": "3"})

        assert result.records == ({"internal_id": "NW-1"},)
        assert result.total_pages == 3
        assert result.has_more is None

    def test_invoice_shape_with_links(self) -> None:
        payload = {"data": [{"id": 1}], "links": {"next": None}, "meta": {"total": 40, "last_page": 2}}

        result = parse_fetch_result(payload)

        assert len(result.records) == 1
        assert result.has_more is False
        assert result.total_pages == 2
        assert result.total_records == 40

    def test_next_link_means_more_pages(self) -> None:
        result = parse_fetch_result({"invoices": [{"id": 1}], "links": {"next": "https://x?page=2"}})

        assert result.has_more is True

    def test_detail_shape(self) -> None:
        result = parse_fetch_result({"result": "success", "value": {"job_id": 9}}, paginated=False)

        assert result.records == ({"job_id": 9},)
        assert result.has_more is False

    def test_detail_with_error_result_is_empty(self) -> None:
        result = parse_fetch_result({"result": "error", "value": {"job_id": 9}}, paginated=False)

        assert result.records == ()


class TestFergusClient:
    """Tests de FergusClient.fetch()."""

    def test_post_sends_paging_in_body_and_cookie_header(self) -> None:
        client, session = _client(_response(payload={"value": [{"internal_id": "NW-1"}]}))
        request = FergusJobRequests(page_size=20).full_population().for_page(2)

        result = client.fetch(request)

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "https://fergus.test/api/v2/status_board/all_active_jobs"
        assert kwargs["json"]["page"] == 2
        assert kwargs["json"]["page_size"] == 20
        assert kwargs["headers"]["Cookie"] == "session=abc"
        assert len(result.records) == 1

    def test_get_sends_paging_in_query(self) -> None:
        client, session = _client(_response(payload={"data": []}))

        client.fetch(FergusInvoiceRequests(page_size=50).full_population())

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["params"] == {"page": 1, "per_page": 50}
        assert kwargs["json"] is None

    def test_detail_request_is_not_paginated(self) -> None:
        client, session = _client(_response(payload={"result": "success", "value": {"job_id": "12"}}))

        result = client.fetch(FergusJobRequests().job_detail("12"))

        kwargs = session.request.call_args.kwargs
        assert "per_page" not in kwargs["params"]
        assert result.records == ({"job_id": "12"},)

    def test_request_headers_are_merged(self) -> None:
        client, session = _client(_response(payload={"value": []}))

        client.fetch(FergusJobRequests().modified_since(utc(2025, 1, 10, 8, 0, 0)))

        headers = session.request.call_args.kwargs["headers"]
        assert headers["If-Modified-Since"] == "Fri, 10 Jan 2025 08:00:00 GMT"
        assert headers["Cookie"] == "session=abc"

    @pytest.mark.parametrize("status_code, retryable, auth", [(429, True, False), (503, True, False),
                                                             (401, False, True), (404, False, False)])
    def test_http_errors_become_source_http_error(self, status_code: int, retryable: bool, auth: bool) -> None:
        client, _ = _client(_response(status_code=status_code, payload={}, headers={"Retry-After": "7"}))

        with pytest.raises(SourceHttpError) as exc_info:
            client.fetch(PageRequest(url="x"))

        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable
        assert exc_info.value.auth_expired is auth
        assert exc_info.value.retry_after == 7.0

    def test_network_error_has_no_status(self) -> None:
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("reset")
        client = FergusClient(FergusCredential(cookie="c"), session=session)

        with pytest.raises(SourceHttpError) as exc_info:
            client.fetch(PageRequest(url="x"))

        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    def test_non_json_body_raises(self) -> None:
        resp = _response(payload=None)
        resp.json.side_effect = ValueError("no json")
        client, _ = _client(resp)

        with pytest.raises(SourceHttpError):
            client.fetch(PageRequest(url="x"))

    def test_credential_repr_hides_cookie(self) -> None:
        assert "abc" not in repr(FergusCredential(cookie="session=abc"))


class TestRequestBuilders:
    """Tests de las requests por estrategia."""

    def test_created_since_filters_by_day(self) -> None:
        request = FergusInvoiceRequests().created_since(utc(2025, 1, 10, 23, 0, 0))

        assert request.params["filter"] == '{"created_at": {"$gte": "2025-01-10"}}'

    def test_job_card_is_a_post_detail_request(self) -> None:
        request = FergusJobRequests().job_card("12")

        assert request.method == "POST"
        assert request.page_size == 0
        assert dict(request.body) == {"job_id": "12"}
