"""
Error Taxonomy Module

Every failure raised by the engine is one of four typed errors so callers
can catch by type instead of parsing messages:

    ValidationError  invalid input, nothing was written
    NotFoundError    referenced loan/installment/group does not exist
    ConflictError    record already exists or concurrent modification detected
    StorageError     transient failure talking to the backing store
"""

from typing import Optional


class MicroloanError(Exception):
    """Base class for all engine errors"""

    code: str = "MICROLOAN_ERROR"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MicroloanError):
    """Invalid input (non-positive amount, zero term, missing field)"""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotFoundError(MicroloanError):
    """Referenced entity does not exist"""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ConflictError(MicroloanError):
    """Entity already exists, or state changed underneath the caller"""

    code: str = "CONFLICT"


class StorageError(MicroloanError):
    """Transient failure communicating with the backing store"""

    code: str = "STORAGE_ERROR"
    retryable: bool = True
