class ReconciliationError(Exception):
    pass


class ValidationError(ReconciliationError):
    """Request carries neither an email nor a phone number."""


class StoreError(ReconciliationError):
    """The contact store failed (connectivity, constraint violation)."""


class NotFoundError(StoreError):
    """A contact row targeted by a write no longer exists."""


class InvariantError(ReconciliationError):
    """The contact graph is in a shape the algorithm does not allow."""
