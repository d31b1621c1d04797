from session_sync.catalog.store import SessionCatalog

__all__ = [
    "SessionCatalog",
]
