"""
PGAP error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, re-propose, abort, alert).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class PgapError(Exception):
    """Base error for all PGAP operations."""
    pass


class ConfigError(PgapError):
    """Configuration is missing or malformed. Fatal at startup."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


# Connectivity errors
class TransientError(PgapError):
    """Network or timeout failure talking to the model or the ledger.

    Retryable by the caller with backoff. Never retried by the core.
    """

    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class ConfirmationPending(TransientError):
    """A transaction was submitted but its confirmation timed out.

    The transaction may still be mined. Callers must look up ``tx_hash``
    before proposing again.
    """

    def __init__(self, tx_hash: str, timeout_seconds: float):
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout_seconds:g}s")


# Proposal errors
class ProposalError(PgapError):
    """Base error for proposals that did not yield an intent."""
    pass


class AgentRejected(ProposalError):
    """The model declined the request. An expected business outcome."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Agent rejected request: {reason}")


class InvalidIntentShape(ProposalError):
    """Model output failed schema validation."""

    def __init__(self, message: str, candidate: Any = None):
        self.candidate = candidate
        super().__init__(f"{message}: {candidate!r}")


class NoProposal(ProposalError):
    """Neither a structured call nor parseable JSON came back from the model."""

    def __init__(self, raw: Optional[str] = None):
        self.raw = raw
        detail = (raw or "")[:200]
        super().__init__(f"Model did not propose a payment: {detail!r}")


class ModelError(PgapError):
    """Non-transient model provider failure (authentication, bad request)."""
    pass


# Policy errors
class CooldownActive(PgapError):
    """Preflight: the agent's cooldown window has not elapsed yet."""

    def __init__(self, wait_seconds: int):
        self.wait_seconds = wait_seconds
        super().__init__(f"Cooldown active: wait {wait_seconds}s")


# Ledger errors
class RevertReason(str, Enum):
    AMOUNT_EXCEEDS_PER_TX_LIMIT = "AmountExceedsPerTxLimit"
    DAILY_LIMIT_EXCEEDED = "DailyLimitExceeded"
    COOLDOWN_NOT_PASSED = "CooldownNotPassed"
    NONCE_ALREADY_USED = "NonceAlreadyUsed"
    RECIPIENT_NOT_ALLOWED = "RecipientNotAllowed"
    AGENT_NOT_AUTHORIZED = "AgentNotAuthorized"
    TREASURY_PAUSED = "TreasuryPaused"
    UNKNOWN = "UnknownRevert"


class ChainRejected(PgapError):
    """The ledger enforced its policy and reverted the payment."""

    def __init__(self, reason: RevertReason, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        message = f"Ledger rejected payment: {reason.value}"
        if tx_hash:
            message += f" (tx {tx_hash})"
        super().__init__(message)


class UnknownRevert(ChainRejected):
    """Revert data could not be decoded. Treated as a hard rejection."""

    def __init__(self, data: Optional[str] = None, tx_hash: Optional[str] = None):
        self.data = data
        super().__init__(RevertReason.UNKNOWN, tx_hash=tx_hash)
