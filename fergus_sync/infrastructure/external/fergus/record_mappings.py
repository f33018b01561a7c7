"""
Mapeos Fergus -> Airtable para Jobs e Invoices.

El motor no conoce columnas: recibe un RecordKeying, un field mapper y,
opcionalmente, un enricher. Este modulo provee los de cada entidad, con los
nombres de columna de las tablas Airtable existentes.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from loguru import logger

from fergus_sync.application.services.change_set_resolver import RecordKeying
from fergus_sync.application.services.field_extractors import (
    ExtractorChain,
    FieldExtractor,
    get_path,
    is_usable,
)
from fergus_sync.application.services.reconciliation_policy import fields_populated
from fergus_sync.domain.entities.records import SourceRecord
from fergus_sync.infrastructure.external.fergus.request_builders import FergusJobRequests
from fergus_sync.infrastructure.fetch.rate_limited_fetcher import RateLimitedFetcher
from fergus_sync.shared.exceptions.sync import SourceRequestError, TransientFetchError
from fergus_sync.shared.utils.datetime_utils import parse_timestamp


PHONE_CONTACT_TYPES = ("phone", "phone_mob")
PAID_STATUS_KEYWORDS = ("paid",)


# ============================================
# Helpers de contactos y direcciones
# ============================================

def contact_from(obj: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Nombre, email y telefonos (separados por coma) de un contacto Fergus."""
    contact = {"name": "", "email": "", "phone": ""}
    if not isinstance(obj, Mapping):
        return contact

    names = [obj.get("first_name") or "", obj.get("last_name") or ""]
    contact["name"] = " ".join(n for n in names if n)

    phones = []
    for item in obj.get("contact_items") or []:
        if not isinstance(item, Mapping):
            continue
        kind = item.get("contact_type")
        value = item.get("contact_val") or ""
        if kind == "email" and not contact["email"]:
            contact["email"] = value
        elif kind in PHONE_CONTACT_TYPES and value:
            phones.append(value)
    contact["phone"] = ", ".join(phones)
    return contact


def extract_contacts(job: Mapping[str, Any]) -> Dict[str, Dict[str, str]]:
    """
    Contactos de sitio, facturacion y principal de un job.

    El contacto principal solo se informa si es distinto al de facturacion.
    """
    billing = get_path(job, "customer", "billing_contact") or job.get("billing_contact")
    main = get_path(job, "customer", "main_contact") or job.get("main_contact")

    contacts = {
        "site": contact_from(job.get("site_address")),
        "billing": contact_from(billing),
        "main": {"name": "", "email": "", "phone": ""},
    }
    billing_id = billing.get("id") if isinstance(billing, Mapping) else None
    if isinstance(main, Mapping) and (billing_id is None or main.get("id") != billing_id):
        contacts["main"] = contact_from(main)
    return contacts


def format_address(address: Any) -> str:
    if isinstance(address, str):
        return address
    if not isinstance(address, Mapping):
        return ""
    parts = [
        address.get("address_1"),
        address.get("address_2"),
        address.get("address_suburb"),
        address.get("address_city"),
        address.get("address_region"),
        address.get("address_country"),
        address.get("address_postcode"),
    ]
    return ", ".join(str(p) for p in parts if p)


def to_date(value: Any) -> str:
    """YYYY-MM-DD o '' si la fecha no es utilizable."""
    parsed = parse_timestamp(value)
    return parsed.date().isoformat() if parsed else ""


def _positive_number(key: str) -> FieldExtractor:
    def _extract(payload: Mapping[str, Any]) -> Any:
        value = payload.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value) if value > 0 else None

    return FieldExtractor(name=key, func=_extract)


# ============================================
# Jobs
# ============================================

JOB_KEY_FIELD = "Job ID"

JOB_KEYING = RecordKeying(
    natural_key=ExtractorChain.of_paths("job_key", "internal_id", "internal_job_id"),
    last_modified=ExtractorChain.of_paths(
        "last_modified", "last_modified", "updated_at", "modified_at", "date_last_modified", "last_modified_at"
    ),
    created_at=ExtractorChain.of_paths("created_at", "created_at", "date_created"),
)

JOB_ID_CHAIN = ExtractorChain.of_paths("job_id", "job_id", "id")

# Un job con detalle ya escrito no se vuelve a enriquecer
JOB_COMPLETENESS = fields_populated("Site Address", "Customer Name", "Created Date")

DETAIL_JOB_CHAIN = ExtractorChain.of_paths("detail_job", ("jobCard", "job"), "job")


def job_source_id(payload: Mapping[str, Any]) -> Optional[str]:
    """Id para endpoints de detalle: job_id/id, o internal_id sin prefijo 'NW-'."""
    job_id = JOB_ID_CHAIN.value(payload)
    if job_id is not None:
        return str(job_id)
    internal = JOB_KEYING.natural_key.value(payload)
    if internal is None:
        return None
    return str(internal).replace("NW-", "")


def map_job_fields(record: SourceRecord) -> Dict[str, Any]:
    """Columnas de la tabla Jobs."""
    job = record.payload
    fields: Dict[str, Any] = {
        JOB_KEY_FIELD: record.natural_key,
        "Description": job.get("brief_description") or "",
        "Job Type": job.get("job_type_name") or "Unknown",
        "Job Status": job.get("job_status") or job.get("status_name") or "",
    }

    detail = job.get("detail")
    if not isinstance(detail, Mapping):
        return fields

    contacts = job.get("contacts") or extract_contacts(detail)
    if detail.get("site_address"):
        site = contacts["site"]
        fields["Site Address"] = format_address(detail.get("site_address"))
        fields["Site Contact Name"] = site["name"]
        fields["Site Contact Email"] = site["email"]
        fields["Site Contact Phone"] = site["phone"]

    if contacts["main"]["name"] or contacts["main"]["email"]:
        fields["Main Contact Name"] = contacts["main"]["name"]
        fields["Main Contact Email"] = contacts["main"]["email"]
        fields["Main Contact Phone"] = contacts["main"]["phone"]

    billing_obj = get_path(detail, "customer", "billing_contact") or detail.get("billing_contact")
    if billing_obj:
        fields["Billing Contact Name"] = contacts["billing"]["name"]
        fields["Billing Contact Email"] = contacts["billing"]["email"]
        fields["Billing Contact Phone"] = contacts["billing"]["phone"]
        fields["Billing Address"] = format_address(billing_obj)

    fields["Customer Name"] = detail.get("customer_name") or ""
    fields["Customer ID"] = detail.get("customer_id") or ""
    if detail.get("long_description"):
        fields["Detailed Description"] = detail["long_description"]
    created = to_date(detail.get("created_at")) or to_date(record.created_at)
    if created:
        fields["Created Date"] = created
    return fields


class JobDetailEnricher:
    """
    Trae el detalle de un job: extended_json y, si no responde, job_card.

    Retorna {"detail": job, "contacts": {...}} o None si no hay detalle.
    """

    def __init__(self, fetcher: RateLimitedFetcher, requests: Optional[FergusJobRequests] = None):
        self._fetcher = fetcher
        self._requests = requests or FergusJobRequests()

    async def fetch_detail(self, job_id: str) -> Optional[Mapping[str, Any]]:
        last_error: Optional[Exception] = None
        for request in (self._requests.job_detail(job_id), self._requests.job_card(job_id)):
            try:
                page = await self._fetcher.fetch_page(request)
            except (TransientFetchError, SourceRequestError) as e:
                logger.debug(f"Sin detalle en {request}: {e.message}")
                last_error = e
                continue
            for value in page.records:
                job = DETAIL_JOB_CHAIN.value(value)
                if isinstance(job, Mapping):
                    return job
        if last_error is not None:
            raise last_error
        return None

    async def __call__(self, record: SourceRecord) -> Optional[Dict[str, Any]]:
        job_id = job_source_id(record.payload)
        if not job_id:
            return None
        detail = await self.fetch_detail(job_id)
        if detail is None:
            return None
        return {"detail": dict(detail), "contacts": extract_contacts(detail)}


# ============================================
# Invoices
# ============================================

INVOICE_KEY_FIELD = "Invoice Number"

INVOICE_KEYING = RecordKeying(
    natural_key=ExtractorChain.of_paths("invoice_key", "public_id", "invoice_number", "number", "id"),
    last_modified=ExtractorChain.of_paths("last_modified", "updated_at", "modified_at", "last_modified"),
    created_at=ExtractorChain.of_paths("created_at", "created_at", "invoice_date", "date"),
)

# Done se marca al pagarse: una factura Done ya no cambia
INVOICE_COMPLETENESS = fields_populated("Invoice Status", "Total", "Done")

AMOUNT_PAID_CHAIN = ExtractorChain(
    name="amount_paid",
    extractors=(_positive_number("paid_amount"), _positive_number("amount_paid"), _positive_number("amount")),
)
TOTAL_CHAIN = ExtractorChain(
    name="total",
    extractors=(
        _positive_number("total"),
        _positive_number("claim_amount_incl_tax"),
        _positive_number("draft_claim_amount_incl_tax"),
        _positive_number("claim_amount"),
    ),
)
INVOICE_JOB_ID_CHAIN = ExtractorChain.of_paths("job_id", ("job", "id"), "job_id")


def invoice_is_done(invoice: Mapping[str, Any]) -> bool:
    status = str(invoice.get("status") or "").strip().lower()
    if status in PAID_STATUS_KEYWORDS:
        return True
    return invoice.get("is_final") is True and invoice.get("is_sent") is True


def map_invoice_fields(record: SourceRecord) -> Dict[str, Any]:
    """Columnas de la tabla Invoices."""
    invoice = record.payload
    job = invoice.get("job_detail") or invoice.get("job")
    job = job if isinstance(job, Mapping) else {}
    contacts = invoice.get("contacts") or extract_contacts(job)

    job_number = job.get("internal_id") or invoice.get("job_number") or ""
    site_address = format_address(job.get("site_address")) or format_address(invoice.get("site_address"))
    customer = (
        job.get("customer_full_name")
        or job.get("customer_name")
        or invoice.get("customer_name")
        or invoice.get("customer_full_name")
        or ""
    )
    site_contact = contacts["site"]
    amount = AMOUNT_PAID_CHAIN.value(invoice, default=0)

    fields: Dict[str, Any] = {
        INVOICE_KEY_FIELD: record.natural_key,
        "Invoice Reference": invoice.get("ref") or invoice.get("reference") or "",
        "Fergus Site Address": site_address,
        "Fergus Job Number": job_number,
        "Amount Paid": amount,
        "Invoice Status": invoice.get("status") or "Unknown",
        "Customer": customer,
        "Invoice Date": to_date(invoice.get("date") or invoice.get("invoice_date") or invoice.get("created_at")),
        "Due Date": to_date(invoice.get("due_date")),
        "First Name": get_path(job, "site_address", "first_name") or "",
        "Last Name": get_path(job, "site_address", "last_name") or "",
        "Total": TOTAL_CHAIN.value(invoice, default=amount),
        "Customer Email": contacts["main"]["email"] or contacts["billing"]["email"],
        "Site Contact Email": site_contact["email"],
        "Done": invoice_is_done(invoice),
    }
    # Airtable rechaza fechas vacias en columnas de tipo fecha
    return {k: v for k, v in fields.items() if not (k.endswith("Date") and v == "")}


class InvoiceJobEnricher:
    """Agrega a la factura el detalle del job al que pertenece."""

    def __init__(self, job_enricher: JobDetailEnricher):
        self._jobs = job_enricher

    async def __call__(self, record: SourceRecord) -> Optional[Dict[str, Any]]:
        nested = record.payload.get("job")
        if isinstance(nested, Mapping) and is_usable(nested.get("site_address")):
            return {"contacts": extract_contacts(nested)}

        job_id = INVOICE_JOB_ID_CHAIN.value(record.payload)
        if job_id is None:
            return None
        detail = await self._jobs.fetch_detail(str(job_id))
        if detail is None:
            return None
        return {"job_detail": dict(detail), "contacts": extract_contacts(detail)}
