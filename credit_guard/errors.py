"""Error taxonomy shared by every service."""
from __future__ import annotations


class CreditGuardError(Exception):
    """Base class for all credit-guard errors."""


class ValidationError(CreditGuardError):
    """Malformed or out-of-range request, rejected before any mutation."""


class NotFoundError(CreditGuardError):
    """Unknown loan, position, alert or assessment id."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class PolicyViolation(CreditGuardError):
    """Request is well-formed but breaches a lending or risk policy."""


class CollaboratorError(CreditGuardError):
    """Provider, oracle, score or analyzer call failed."""

    def __init__(self, collaborator: str, message: str, retryable: bool = True) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
        self.retryable = retryable


class InvariantViolation(CreditGuardError):
    """Internal state contradicts a documented invariant (a bug)."""
