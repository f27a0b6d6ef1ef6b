"""Custom exception hierarchy for the failsig package."""


class FailsigError(Exception):
    """Base exception for all failsig errors."""


class ConfigurationError(FailsigError):
    """Missing or invalid configuration."""


class InputError(FailsigError):
    """Malformed or missing failure evidence."""


class RuleValidationError(InputError):
    """Classification rule rejected at load time."""

    def __init__(self, rule_ref: str, message: str) -> None:
        self.rule_ref = rule_ref
        super().__init__(f"Rule {rule_ref}: {message}")


class NotFoundError(FailsigError):
    """Classification or defect group does not exist."""

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id!r} not found")


class ConflictError(FailsigError):
    """Concurrent creation of a defect group for the same signature."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Defect group for signature {signature} already exists")


class StorageError(FailsigError):
    """I/O failure in the storage adapter. Retryable at the caller's discretion."""


class ExternalPushError(FailsigError):
    """Issue tracker call failed."""
