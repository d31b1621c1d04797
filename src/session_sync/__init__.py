from session_sync.events import SyncEvent, decode_event
from session_sync.reconciler import EventReconciler
from session_sync.registry import Instance, InstanceRegistry
from session_sync.store import ChangeEmitter, ChangeSet, InstanceMessageStore
from session_sync.transport import EventTransport

__all__ = [
    "ChangeEmitter",
    "ChangeSet",
    "EventReconciler",
    "EventTransport",
    "Instance",
    "InstanceMessageStore",
    "InstanceRegistry",
    "SyncEvent",
    "decode_event",
]
