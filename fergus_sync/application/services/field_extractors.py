"""
Extraccion de campos sobre JSON heterogeneo.

El origen devuelve el mismo dato bajo distintos nombres segun el endpoint
(`id` / `job_id`, `data` / `invoices` / `value`, ...). En vez de cadenas de
`a or b or c` repartidas por el codigo, cada dato se resuelve con un
ExtractorChain: una lista ordenada de FieldExtractor con nombre. La cadena
retorna el primer valor utilizable y el nombre del extractor que lo produjo.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple


_MISSING = object()


def is_usable(value: Any) -> bool:
    """None, strings vacios (tras strip) y colecciones vacias no son utilizables."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def get_path(payload: Any, *keys: Any, default: Any = None) -> Any:
    """
    Navega un JSON anidado.

    Las claves int indexan listas. Cualquier salto faltante retorna `default`.
    """
    current = payload
    for key in keys:
        if isinstance(key, int) and isinstance(current, (list, tuple)):
            if -len(current) <= key < len(current):
                current = current[key]
                continue
            return default
        if isinstance(current, Mapping):
            current = current.get(key, _MISSING)
            if current is _MISSING:
                return default
            continue
        return default
    return current


@dataclass(frozen=True)
class FieldExtractor:
    """Extractor con nombre. `func` recibe el payload completo."""

    name: str
    func: Callable[[Mapping[str, Any]], Any]

    def extract(self, payload: Mapping[str, Any]) -> Any:
        try:
            return self.func(payload)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError):
            return None


def from_path(*keys: Any, name: Optional[str] = None, transform: Optional[Callable[[Any], Any]] = None) -> FieldExtractor:
    """Extractor que lee una ruta, con transformacion opcional."""
    label = name or ".".join(str(k) for k in keys)

    def _extract(payload: Mapping[str, Any]) -> Any:
        value = get_path(payload, *keys)
        if transform is not None and is_usable(value):
            return transform(value)
        return value

    return FieldExtractor(name=label, func=_extract)


@dataclass(frozen=True)
class ExtractorChain:
    """Primer extractor con valor utilizable gana."""

    name: str
    extractors: Tuple[FieldExtractor, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "extractors", tuple(self.extractors))

    @classmethod
    def of_paths(cls, name: str, *paths: Any) -> "ExtractorChain":
        """
        Atajo: cada item es una clave o una tupla de claves.

            ExtractorChain.of_paths("job_key", "internal_id", "internal_job_id")
        """
        extractors = []
        for p in paths:
            keys = p if isinstance(p, tuple) else (p,)
            extractors.append(from_path(*keys))
        return cls(name=name, extractors=tuple(extractors))

    def extract(self, payload: Mapping[str, Any]) -> Tuple[Any, Optional[str]]:
        """Retorna (valor, nombre del extractor) o (None, None)."""
        for extractor in self.extractors:
            value = extractor.extract(payload)
            if is_usable(value):
                return value, extractor.name
        return None, None

    def value(self, payload: Mapping[str, Any], default: Any = None) -> Any:
        value, matched = self.extract(payload)
        return value if matched is not None else default

    def then(self, extra: Iterable[FieldExtractor]) -> "ExtractorChain":
        """Cadena extendida con extractores de menor prioridad."""
        return ExtractorChain(name=self.name, extractors=self.extractors + tuple(extra))
