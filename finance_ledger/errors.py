class LedgerError(Exception):
    """Base class for ledger validation and persistence errors."""

    code = "LedgerError"

    def __init__(self, message, field=None):
        super().__init__(message)
        self.message = message
        self.field = field


class MissingField(LedgerError):
    """A required source column or request field is absent."""

    code = "MissingField"


class InvalidFormat(LedgerError):
    """A value is present but cannot be parsed."""

    code = "InvalidFormat"


class DuplicateConflict(LedgerError):
    """A uniqueness constraint rejected the write."""

    code = "DuplicateConflict"


class PersistenceFailure(LedgerError):
    """The unit of work failed as a whole and was rolled back."""

    code = "PersistenceFailure"


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""
