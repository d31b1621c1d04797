from session_sync.store.changes import ChangeEmitter, ChangeSet
from session_sync.store.message_store import InstanceMessageStore
from session_sync.store.models import (
    MessageRecord,
    PartRecord,
    PermissionEntry,
    RevertMarker,
    SessionRecord,
    SessionUsageState,
)
from session_sync.store.permissions import PermissionQueue

__all__ = [
    "ChangeEmitter",
    "ChangeSet",
    "InstanceMessageStore",
    "MessageRecord",
    "PartRecord",
    "PermissionEntry",
    "PermissionQueue",
    "RevertMarker",
    "SessionRecord",
    "SessionUsageState",
]
