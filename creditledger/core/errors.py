"""Ledger error taxonomy.

Business outcomes (overdraft) and caller mistakes (bad amount, bad tenant)
are separate from infrastructure failures, which are retryable.
"""

from __future__ import annotations

from dataclasses import dataclass


class LedgerError(Exception):
    """Base class for all ledger errors."""


class OverdraftError(LedgerError):
    """A debit would drive the tenant balance below zero."""

    def __init__(self, tenant_id: int, requested: int, available: int) -> None:
        self.tenant_id = tenant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Debit of {requested} exceeds balance {available} for tenant {tenant_id}"
        )


class LedgerUnavailableError(LedgerError):
    """The durable store could not complete the unit of work. Safe to retry."""


class InvalidAmountError(LedgerError, ValueError):
    pass


class InvalidTenantError(LedgerError, ValueError):
    pass


class InvalidMetadataError(LedgerError, ValueError):
    """Transaction metadata does not match its declared ``kind``."""


class TenantConflictError(LedgerError, ValueError):
    """Tenant slug or provider customer id is already taken."""


class TenantNotFoundError(LedgerError, LookupError):
    def __init__(self, tenant_id: int) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} not found")


class InvalidEventError(ValueError):
    """Webhook event lacks the fields needed for idempotent processing."""


@dataclass(frozen=True)
class InsufficientCredits:
    """Shortfall details surfaced to the user so the UI can offer a top-up."""

    tenant_id: int
    credits_available: int
    estimated_tokens_needed: int
    plan: str | None = None

    @property
    def credits_needed(self) -> int:
        return max(0, self.estimated_tokens_needed - self.credits_available)

    def to_dict(self) -> dict:
        return {
            "error": "insufficient_credits",
            "error_code": "INSUFFICIENT_CREDITS",
            "message": "Not enough credits available. Please purchase more credits or upgrade your plan.",
            "credits_available": self.credits_available,
            "estimated_tokens_needed": self.estimated_tokens_needed,
            "credits_needed": self.credits_needed,
            "plan": self.plan,
        }
