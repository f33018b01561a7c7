"""
Utilidades para manejo de fechas y horas.

Todo el motor trabaja con datetimes aware en UTC. Los timestamps del origen
pueden venir ausentes o en formatos heterogéneos: en ese caso se tratan como
"no utilizables" (None) en vez de levantar error.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Retorna la hora actual en UTC, como datetime aware."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normaliza datetime a UTC (aware).

    Un datetime naive se asume UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_z(dt: datetime) -> str:
    """Serializa a ISO 8601 con sufijo 'Z' y sin microsegundos."""
    return ensure_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def to_http_date(dt: datetime) -> str:
    """Formato RFC 7231 para headers tipo If-Modified-Since."""
    return ensure_utc(dt).strftime("%a, %d %b %Y %H:%M:%S GMT")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Convierte un valor del origen a datetime UTC.

    Acepta datetime, ISO 8601 (con 'Z' o offset), fechas 'YYYY-MM-DD' y epoch
    en segundos o milisegundos. Cualquier otra cosa retorna None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None
