"""Historian database access: tag catalog, connection gate, query planning, and fetching."""

from .errors import (
    CancelledOperation,
    DatabaseConnectionError,
    HistorianError,
    QueryTimeout,
    SchemaMismatch,
    ValidationError,
)
from .models import DataPoint, TagDescriptor, points_to_frame
