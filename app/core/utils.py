"""
Utility functions for the application.
"""
from datetime import datetime, timezone
from typing import Type, TypeVar, List, Any, Optional
from pydantic import BaseModel

T = TypeVar('T', bound=BaseModel)


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how the listing tables store times."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def model_to_schema(db_model: Any, schema_class: Type[T]) -> T:
    """
    Convert a SQLAlchemy model instance to a Pydantic schema instance.
    """
    return schema_class.model_validate(db_model, from_attributes=True)


def models_to_schemas(db_models: List[Any], schema_class: Type[T]) -> List[T]:
    return [model_to_schema(db_model, schema_class) for db_model in db_models]


def strip_title_prefixes(title: str, prefixes) -> str:
    """Remove any sale marker prefixes (repeatedly) from a listing title."""
    cleaned = title or ""
    changed = True
    while changed:
        changed = False
        for prefix in prefixes:
            if cleaned.startswith(prefix):
                cleaned = cleaned[len(prefix):].lstrip()
                changed = True
    return cleaned
