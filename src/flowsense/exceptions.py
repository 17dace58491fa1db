"""Exception types for FlowSense."""

from datetime import datetime


class FlowSenseError(Exception):
    """Base exception for FlowSense errors."""


class OutOfOrderReading(FlowSenseError, ValueError):
    """A reading is not later than the meter's last processed reading."""

    def __init__(self, meter_id: str, timestamp: datetime, last_timestamp: datetime):
        super().__init__(
            f"Reading for meter '{meter_id}' at {timestamp.isoformat()} is not after "
            f"last processed reading at {last_timestamp.isoformat()}"
        )
        self.meter_id = meter_id
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp


class ClassificationUnavailable(FlowSenseError):
    """The external classifier failed, timed out, or is not configured."""


class InvalidTimeWindow(FlowSenseError, ValueError):
    """A query window ends before it starts."""


class UnknownMeter(FlowSenseError, LookupError):
    """No meter with the requested identifier exists."""

    def __init__(self, meter_id: str):
        super().__init__(f"Meter '{meter_id}' not found")
        self.meter_id = meter_id


class EventNotFound(FlowSenseError, LookupError):
    """No water event with the requested id exists."""

    def __init__(self, event_id: int):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id
