from itsm_sync.models.base import Base
from itsm_sync.models.conflict_policy import ConflictPolicy
from itsm_sync.models.connection import Connection
from itsm_sync.models.field_mapping import FieldMapping
from itsm_sync.models.sync_log import ItsmAuditLog, ItsmSyncEvent
from itsm_sync.models.sync_queue import SyncQueueItem
from itsm_sync.models.ticket_link import TicketLink

__all__ = [
    "Base",
    "ConflictPolicy",
    "Connection",
    "FieldMapping",
    "ItsmAuditLog",
    "ItsmSyncEvent",
    "SyncQueueItem",
    "TicketLink",
]
