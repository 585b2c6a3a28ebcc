"""Common schema building blocks shared by the wire shape and the engine."""

from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from marketchat.core.identity import normalize_identifier


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]
"""Timezone-aware UTC timestamp, serialized as ISO-8601."""

Identifier = Annotated[str, AfterValidator(normalize_identifier)]
"""User identifier compared case- and whitespace-insensitively."""


class CamelModel(BaseModel):
    """Base model using camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs) -> dict:
        """Dump to the JSON wire shape."""
        return self.model_dump(mode="json", by_alias=True, **kwargs)
