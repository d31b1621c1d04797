from __future__ import annotations


class SessionSyncError(Exception):
    """Base class for errors raised by the sync engine."""


class InstanceNotReadyError(SessionSyncError):
    def __init__(self, instance_id: str):
        super().__init__(f"Instance not ready: {instance_id}")
        self.instance_id = instance_id


class SessionNotFoundError(SessionSyncError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ApiError(SessionSyncError):
    def __init__(self, method: str, path: str, status_code: int, body: str = ""):
        super().__init__(f"{method} {path} failed: HTTP {status_code} -- {body}")
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body


class MalformedEventError(SessionSyncError):
    pass
