"""Base model for pyupark records.

Every record inherits from :class:`UparkBaseModel` which provides:

* ``alias_generator=to_camel`` so records serialise with the camelCase
  keys live viewers and API callers expect, while Python code uses
  snake_case fields.
* ``populate_by_name`` so either spelling is accepted on input.
* Frozen instances: state changes are expressed as ``model_copy(update=...)``
  and persisted explicitly by the owning store.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class UparkBaseModel(BaseModel):
    """Base for pyupark records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready camelCase dict."""
        return self.model_dump(mode="json", by_alias=True)
