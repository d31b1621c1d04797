from session_sync.commands.router import CommandRouter

__all__ = [
    "CommandRouter",
]
