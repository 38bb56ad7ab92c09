"""
Custom exceptions for the run reconciliation engine with user-friendly error messages.
"""

class RunboardException(Exception):
    """Base exception for runboard errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class NotFoundError(RunboardException):
    """Raised when a target document is absent."""
    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(
            f"{collection} document '{doc_id}' not found",
            f"❌ Could not find '{doc_id}'."
        )

class RunNotFoundError(NotFoundError):
    """Raised when a run does not exist."""
    def __init__(self, run_id: str):
        super().__init__("runs", run_id)
        self.user_message = f"❌ Run '{run_id}' not found!"

class PlayerNotFoundError(NotFoundError):
    """Raised when a player profile does not exist."""
    def __init__(self, player_id: str):
        super().__init__("players", player_id)
        self.user_message = f"❌ Player '{player_id}' not found!"

class StoreError(RunboardException):
    """Raised when a store read or write fails for a generic I/O reason."""
    _label = "Store error"

    def __init__(self, operation: str, details: str = None, user_message: str = None):
        self.operation = operation
        self.details = details
        super().__init__(
            f"{self._label} during {operation}: {details}",
            user_message or "❌ Database error occurred. Please try again later."
        )

class StorePermissionError(StoreError):
    """Raised when the store rejects an operation for authorization reasons."""
    _label = "Permission denied"

    def __init__(self, operation: str, details: str = None):
        super().__init__(
            operation, details,
            "❌ You do not have permission to change this data."
        )

class ValidationFailedError(RunboardException):
    """Raised when run data or an edit patch is malformed."""
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(
            f"Validation failed: {'; '.join(self.errors)}",
            f"❌ {self.errors[0]}" if self.errors else "❌ Invalid run data."
        )

class RecomputeFailedError(RunboardException):
    """Raised when a player's points/totals recompute could not complete."""
    def __init__(self, player_id: str, details: str = None):
        self.player_id = player_id
        super().__init__(
            f"Recompute failed for player {player_id}: {details}",
            "❌ Failed to refresh player points. Please try again."
        )

class BatchLimitError(StoreError):
    """Raised when a single batch exceeds the store's per-transaction write limit."""
    def __init__(self, size: int, limit: int):
        super().__init__("commit_batch", f"{size} writes exceeds limit of {limit}")
        self.size = size
        self.limit = limit
