from typing import List


class CatalogException(Exception):
    """Base exception for all repository-catalog errors."""
    pass

class InvalidArgumentError(CatalogException, ValueError):
    """Raised when a caller supplies an empty or malformed value."""
    pass

class InvalidOperationError(CatalogException):
    """Raised when an operation is not allowed given the entity's current state."""
    pass

class HierarchyCycleError(InvalidOperationError):
    """Raised by the loader when repository groups form an indirect parent cycle."""
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Repository group hierarchy contains a cycle: {' -> '.join(cycle)}")

class RateLimitExceededException(CatalogException):
    """Raised when the GitLab API rate limit is hit."""
    def __init__(self, reset_at: str, message: str = "GitLab API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at}")

class DatabaseException(CatalogException):
    """Raised when a database operation fails."""
    pass
