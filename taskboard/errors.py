"""
Error taxonomy shared by the store, the sync core and the HTTP API.

    NotFound            - referenced entity or parent is missing; never retried
    PermissionDenied    - actor is not allowed to touch the board; never retried
    TransientFailure    - store/network hiccup; safe to retry idempotent calls
    ChannelDisconnected - notification channel dropped; triggers resubscribe
"""


class TaskboardError(Exception):
    """Base class for all task board errors."""
    pass


class NotFound(TaskboardError):
    """Raised when a board, list, task, member or profile does not exist."""

    def __init__(self, entity: str, entity_id: str = ""):
        self.entity = entity
        self.entity_id = entity_id
        detail = f"{entity} {entity_id}".strip()
        super().__init__(f"{detail} not found")


class PermissionDenied(TaskboardError):
    """Raised when the acting user lacks access to a board."""
    pass


class TransientFailure(TaskboardError):
    """Raised when the backing store is temporarily unavailable."""
    pass


class ChannelDisconnected(TaskboardError):
    """Raised when a notification subscription is dropped or cannot be opened."""
    pass


class ConfigError(TaskboardError):
    """Raised when configuration is invalid or incomplete."""
    pass
