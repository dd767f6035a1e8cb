# Sync/exceptions.py
# Description: Exception hierarchy for the sync layer.
#
########################################################################################################################
from typing import Optional


class SyncError(Exception):
    """Base exception for the sync layer."""
    pass


class TransportError(SyncError):
    """Represents an error talking to the remote store (fetch/create/update/delete)."""

    def __init__(self, message, entity_type: Optional[str] = None, entity_id: Optional[str] = None, *args):
        super().__init__(message, *args)
        self.entity_type = entity_type
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity_type:
            details.append(f"Entity: {self.entity_type}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


class NetworkError(TransportError):
    """The request never got a response (connection refused, timeout, DNS)."""
    pass


class RemoteError(TransportError):
    """The remote answered with an error status."""

    def __init__(self, message, status_code: Optional[int] = None, entity_type: Optional[str] = None,
                 entity_id: Optional[str] = None, *args):
        super().__init__(message, entity_type, entity_id, *args)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class DecodeError(SyncError):
    """A server payload could not be decoded into a domain entity."""

    def __init__(self, message, entity_type: Optional[str] = None, raw: Optional[dict] = None, *args):
        super().__init__(message, *args)
        self.entity_type = entity_type
        self.raw = raw


class StateError(SyncError):
    """Represents an error reading/writing sync cursors."""
    pass


class PermissionDeniedError(SyncError):
    """The current user's membership role does not allow the requested write."""

    def __init__(self, message, account_id: Optional[str] = None, role: Optional[str] = None, *args):
        super().__init__(message, *args)
        self.account_id = account_id
        self.role = role

    def __str__(self):
        base = super().__str__()
        details = []
        if self.account_id:
            details.append(f"Account: {self.account_id}")
        if self.role:
            details.append(f"Role: {self.role}")
        return f"{base} ({', '.join(details)})" if details else base

#
# End of Sync/exceptions.py
########################################################################################################################
