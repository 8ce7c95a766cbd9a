"""Import all models to register them with SQLAlchemy metadata."""
from app.models.base import Base
from app.models.depth_reading import DepthReading
from app.models.depth_aggregate import DepthAggregate
from app.models.offline_queue_entry import OfflineQueueEntry
from app.models.emergency_incident import EmergencyIncident

__all__ = [
    "Base",
    "DepthReading",
    "DepthAggregate",
    "OfflineQueueEntry",
    "EmergencyIncident",
]
