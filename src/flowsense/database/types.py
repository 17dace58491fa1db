"""Custom SQLAlchemy column types for FlowSense."""

import json

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Text, TypeDecorator


class ValidatedJSON(TypeDecorator[Any]):
    """
    A JSON column type that validates JSON before storing.

    This type ensures that:
    1. Values can be serialized to JSON
    2. Stored values are valid JSON strings
    3. Retrieved values are automatically deserialized to Python objects

    Example:
        class WaterEvent(Base):
            flow_data = mapped_column(ValidatedJSON, nullable=True)

        event.flow_data = [{"time": "2025-03-01T07:01:00+00:00", "rate": 500}]
        print(event.flow_data)  # Deserialized list
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        """
        Convert Python object to JSON string before storing.

        Raises:
            ValueError: If value cannot be serialized to JSON
        """
        if value is None:
            return None

        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ValueError(
                f"Cannot serialize value to JSON: {e}. Value type: {type(value).__name__}"
            ) from e

    def process_result_value(self, value: str | None, dialect: Any) -> Any:
        """
        Convert JSON string to Python object after retrieval.

        Raises:
            ValueError: If stored value is not valid JSON
        """
        if value is None:
            return None

        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Stored value is not valid JSON: {e}. Value: {value[:100]}..."
            ) from e


class ValidatedJSONList(ValidatedJSON):
    """A ValidatedJSON column that reads NULL back as an empty list."""

    def process_result_value(self, value: str | None, dialect: Any) -> Any:
        result = super().process_result_value(value, dialect)
        return result if result is not None else []


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timestamp column stored as naive UTC and returned as aware UTC.

    SQLite has no timezone support, so aware values are converted to UTC
    on the way in and tagged with UTC on the way out. Naive input is
    assumed to already be UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise ValueError(f"Expected datetime, got {type(value).__name__}")
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)
