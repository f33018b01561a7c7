"""
Requests de lectura por entidad para Fergus.

Cada builder implementa las estrategias que consume ChangeSetResolver:
- modified_since: header If-Modified-Since
- created_since: filtro created_at >= fecha (granularidad de dia)
- full_population: sin filtros, usado por el fallback de resync completo
"""
import json
from datetime import datetime
from typing import Any, Dict, Optional

from fergus_sync.domain.entities.records import PageRequest
from fergus_sync.shared.utils.datetime_utils import ensure_utc, to_http_date


def _created_filter(checkpoint: datetime) -> str:
    return json.dumps({"created_at": {"$gte": ensure_utc(checkpoint).date().isoformat()}})


class FergusJobRequests:
    """Jobs activos via status_board/all_active_jobs (POST paginado)."""

    LIST_PATH = "status_board/all_active_jobs"
    DETAIL_PATH = "jobs/extended_json"
    JOB_CARD_PATH = "job_card/load_from_job"

    def __init__(self, page_size: int = 20):
        self.page_size = page_size

    def _list(self, label: str, filter_value: str = "", headers: Optional[Dict[str, str]] = None) -> PageRequest:
        body: Dict[str, Any] = {
            "filter": filter_value,
            "selected_group_ids": [],
            "selected_employee_ids": [],
        }
        return PageRequest(
            url=self.LIST_PATH,
            method="POST",
            page=1,
            page_size=self.page_size,
            body=body,
            headers=headers or {},
            label=label,
        )

    def modified_since(self, checkpoint: datetime) -> PageRequest:
        return self._list("jobs.modified_since", headers={"If-Modified-Since": to_http_date(checkpoint)})

    def created_since(self, checkpoint: datetime) -> PageRequest:
        return self._list("jobs.created_since", filter_value=_created_filter(checkpoint))

    def full_population(self) -> PageRequest:
        return self._list("jobs.full_population")

    def job_detail(self, job_id: str) -> PageRequest:
        return PageRequest(
            url=self.DETAIL_PATH,
            method="GET",
            page_size=0,
            params={"job_id": job_id, "internal_job_id": "", "page": ""},
            label=f"jobs.detail[{job_id}]",
        )

    def job_card(self, job_id: str) -> PageRequest:
        return PageRequest(
            url=self.JOB_CARD_PATH,
            method="POST",
            page_size=0,
            body={"job_id": job_id},
            label=f"jobs.job_card[{job_id}]",
        )


class FergusInvoiceRequests:
    """Facturas via financials/invoices (GET paginado)."""

    LIST_PATH = "financials/invoices"

    def __init__(self, page_size: int = 50):
        self.page_size = page_size

    def _list(self, label: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> PageRequest:
        return PageRequest(
            url=self.LIST_PATH,
            method="GET",
            page=1,
            page_size=self.page_size,
            params=params or {},
            headers=headers or {},
            label=label,
        )

    def modified_since(self, checkpoint: datetime) -> PageRequest:
        return self._list("invoices.modified_since", headers={"If-Modified-Since": to_http_date(checkpoint)})

    def created_since(self, checkpoint: datetime) -> PageRequest:
        return self._list("invoices.created_since", params={"filter": _created_filter(checkpoint)})

    def full_population(self) -> PageRequest:
        return self._list("invoices.full_population")
