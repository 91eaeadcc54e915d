"""
Error types raised by the reconciliation pipeline.

Every error carries the entity type, batch id and (where known) the natural
key of the offending record so failures can be traced back to source rows.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all pipeline failures."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        batch_id: Optional[str] = None,
        natural_key: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.batch_id = batch_id
        self.natural_key = natural_key

    def context(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "batch_id": self.batch_id,
            "natural_key": self.natural_key,
        }

    def __str__(self) -> str:
        parts = [f"{k}={v}" for k, v in self.context().items() if v is not None]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class InputError(ReconciliationError):
    """Missing or malformed batch id, unknown entity type, bad record key."""


class DependencyNotReadyError(ReconciliationError):
    """Required crosswalk, staging or upstream entity state is absent."""


class IntegrityViolation(ReconciliationError):
    """More than one current dimension version exists for a master id."""


class ConfigurationError(ReconciliationError):
    """Policy, mapping or quality rule configuration is malformed."""


class RunLockTimeout(ReconciliationError):
    """The per-entity-type run lock could not be acquired in time."""
