"""
Normalization - merge possibly partial or legacy data over the default shape.

Every field is validated on its own so one bad value never costs the rest of
the record. Lists that a document store saved as index-keyed mappings are
read back as lists.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar
from datetime import date
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from .policy import CachedPolicy
from .system_state import Credits, Insight, LearnedFact, SystemState

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_adapters: Dict[Any, TypeAdapter] = {}


def as_list(value: Any) -> List[Any]:
    """Lists pass through, mappings yield their values, anything else is empty"""

    if isinstance(value, list):
        return value
    if isinstance(value, Mapping):
        return list(value.values())
    return []


def _adapter(annotation: Any) -> TypeAdapter:
    adapter = _adapters.get(annotation)
    if adapter is None:
        adapter = TypeAdapter(annotation)
        _adapters[annotation] = adapter
    return adapter


def _lookup(record: Mapping, model: Type[BaseModel], name: str):
    field = model.model_fields[name]
    for key in (field.alias, name):
        if key and key in record:
            return True, record[key]
    return False, None


def _models(value: Any, model: Type[M]) -> List[M]:
    items = []
    for item in as_list(value):
        try:
            items.append(model.model_validate(item))
        except ValidationError:
            logger.debug("Dropping malformed item", model=model.__name__)
    return items


def _string_lists(value: Any) -> Dict[str, List[str]]:
    if not isinstance(value, Mapping):
        raise TypeError("expected a mapping")
    return {
        str(key): [item for item in as_list(items) if isinstance(item, str)]
        for key, items in value.items()
    }


def _any_lists(value: Any) -> Dict[str, List[Any]]:
    if not isinstance(value, Mapping):
        raise TypeError("expected a mapping")
    return {str(key): list(as_list(items)) for key, items in value.items()}


def _weights(value: Any) -> Dict[str, float]:
    if not isinstance(value, Mapping):
        raise TypeError("expected a mapping")
    return {
        str(key): float(weight)
        for key, weight in value.items()
        if isinstance(weight, (int, float)) and not isinstance(weight, bool)
    }


def normalize_credits(value: Any, default: Optional[Credits] = None) -> Credits:
    base = default or Credits()
    if not isinstance(value, Mapping):
        return base.model_copy()
    return _merge_fields(Credits, value, base)


_FIELD_NORMALIZERS: Dict[str, Callable[[Any], Any]] = {
    "learned_facts": lambda value: _models(value, LearnedFact),
    "insights": lambda value: _models(value, Insight),
    "negative_constraints": _string_lists,
    "golden_templates": _any_lists,
    "keyword_weights": _weights,
}


def _merge_fields(model: Type[M], record: Mapping, base: M) -> M:
    values: Dict[str, Any] = {}
    for name, field in model.model_fields.items():
        found, value = _lookup(record, model, name)
        if not found:
            continue

        try:
            if name == "credits":
                values[name] = normalize_credits(value, getattr(base, name))
            elif name in _FIELD_NORMALIZERS:
                values[name] = _FIELD_NORMALIZERS[name](value)
            else:
                values[name] = _adapter(field.annotation).validate_python(value)
        except (ValidationError, TypeError, ValueError):
            logger.debug("Falling back to default", model=model.__name__, field=name)

    return base.model_copy(update=values, deep=True)


def normalize_system_state(raw: Any, today: Optional[date] = None) -> SystemState:
    """Merge raw over the default SystemState; always returns a complete object"""

    record = raw if isinstance(raw, Mapping) else {}
    return _merge_fields(SystemState, record, SystemState.defaults(today))


def merge_system_state(current: SystemState, partial: Any) -> SystemState:
    """Shallow-merge a partial record over an existing state"""

    record = partial if isinstance(partial, Mapping) else {}
    return _merge_fields(SystemState, record, current)


def normalize_policy(raw: Any) -> Optional[CachedPolicy]:
    if not isinstance(raw, Mapping):
        return None
    return _merge_fields(CachedPolicy, raw, CachedPolicy())
