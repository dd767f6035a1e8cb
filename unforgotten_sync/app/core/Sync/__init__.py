# Sync/__init__.py
from .core import SyncEngine, DEFAULT_ENTITY_ORDER
from .models import (EntityType, ChangeOperation, ChangeKind, MergeOutcome, SyncState, PendingChange, PushReport,
                     SyncResult)
from .exceptions import (SyncError, TransportError, NetworkError, RemoteError, DecodeError, StateError,
                         PermissionDeniedError)
from .transport import RemoteClient, HttpRemoteClient
from .conflict import ConflictResolver, LastWriteWinsStrategy, Resolution
from .state import SyncStateManager
from .notifier import ChangeNotifier, ChangeEvent, Subscription
from .outbox import Outbox, OutboxWorker
from .connectivity import NetworkMonitor
from .medication_logs import MedicationLogGenerator

__all__ = [
    "SyncEngine",
    "DEFAULT_ENTITY_ORDER",
    "EntityType",
    "ChangeOperation",
    "ChangeKind",
    "MergeOutcome",
    "SyncState",
    "PendingChange",
    "PushReport",
    "SyncResult",
    "SyncError",
    "TransportError",
    "NetworkError",
    "RemoteError",
    "DecodeError",
    "StateError",
    "PermissionDeniedError",
    "RemoteClient",
    "HttpRemoteClient",
    "ConflictResolver",
    "LastWriteWinsStrategy",
    "Resolution",
    "SyncStateManager",
    "ChangeNotifier",
    "ChangeEvent",
    "Subscription",
    "Outbox",
    "OutboxWorker",
    "NetworkMonitor",
    "MedicationLogGenerator",
]
