"""
Structural contracts for agent inputs and payment intents.

The model's output is untrusted data. Everything it returns passes through
``validate_intent`` or ``parse_rejection`` before anything else looks at it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from .errors import InvalidIntentShape


_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")
_UINT_RE = re.compile(r"[0-9]+")

INTENT_FIELDS = ("agent", "recipient", "amount", "nonce", "reasoning")

# Declared function for structured (tool-call) extraction.
INTENT_FUNCTION = {
    "name": "propose_payment",
    "description": (
        "Propose a single payment that satisfies the policy. "
        "Amounts and nonces are base-unit integers encoded as strings."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "agent": {"type": "string", "description": "Paying agent address"},
            "recipient": {"type": "string", "description": "Recipient address from the allow-list"},
            "amount": {"type": "string", "description": "Amount in base units, digits only"},
            "nonce": {"type": "string", "description": "Nonce exactly as given, digits only"},
            "reasoning": {"type": "string", "description": "Brief explanation"},
        },
        "required": list(INTENT_FIELDS),
    },
}


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.fullmatch(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.fullmatch(value))


def to_uint(value: int | str, field_name: str) -> int:
    """Accept a non-negative int or its decimal string; reject everything else."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a non-negative integer")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"{field_name} must be a non-negative integer")
        return value
    if isinstance(value, str) and _UINT_RE.fullmatch(value):
        return int(value)
    raise ValueError(f"{field_name} must be a non-negative integer, got {value!r}")


@dataclass(frozen=True)
class PolicySnapshot:
    """Ledger policy for one agent at one point in time."""

    per_tx_limit: int
    daily_limit: int
    cooldown_seconds: int
    spent_today: int

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.spent_today)

    def to_dict(self) -> dict:
        return {
            "perTxLimit": str(self.per_tx_limit),
            "dailyLimit": str(self.daily_limit),
            "cooldownSeconds": str(self.cooldown_seconds),
            "spentToday": str(self.spent_today),
        }


@dataclass(frozen=True)
class PolicyView:
    """The slice of policy the model is allowed to see."""

    per_tx_limit: int
    daily_remaining: int
    cooldown_seconds: int
    allowed_recipients: tuple[str, ...]

    @classmethod
    def from_snapshot(cls, snapshot: PolicySnapshot, allowed_recipients: Iterable[str]) -> "PolicyView":
        recipients = tuple(sorted({normalize_address(r) for r in allowed_recipients}))
        return cls(
            per_tx_limit=snapshot.per_tx_limit,
            daily_remaining=snapshot.daily_remaining,
            cooldown_seconds=snapshot.cooldown_seconds,
            allowed_recipients=recipients,
        )

    def to_dict(self) -> dict:
        return {
            "perTxLimit": str(self.per_tx_limit),
            "dailyRemaining": str(self.daily_remaining),
            "cooldownSeconds": str(self.cooldown_seconds),
            "allowedRecipients": list(self.allowed_recipients),
        }


@dataclass(frozen=True)
class AgentInput:
    request_text: str
    agent_address: str
    policy: PolicyView


@dataclass(frozen=True)
class PaymentIntent:
    """A structurally validated, not-yet-executed payment."""

    agent: str
    recipient: str
    amount: str
    nonce: str
    reasoning: str

    @property
    def amount_base_units(self) -> int:
        return int(self.amount)

    @property
    def nonce_value(self) -> int:
        return int(self.nonce)

    def to_dict(self) -> dict:
        return {
            "agent": self.agent,
            "recipient": self.recipient,
            "amount": self.amount,
            "nonce": self.nonce,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class RejectionSignal:
    reason: str

    def to_dict(self) -> dict:
        return {"reject": True, "reason": self.reason}


def parse_rejection(candidate: Any) -> Optional[RejectionSignal]:
    """Return the rejection sentinel if ``candidate`` is one, else None."""
    if not isinstance(candidate, Mapping) or candidate.get("reject") is not True:
        return None
    reason = candidate.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        reason = "no reason given"
    return RejectionSignal(reason=reason)


def validate_intent(candidate: Any) -> PaymentIntent:
    """Validate a raw candidate against the payment intent wire shape."""
    if not isinstance(candidate, Mapping):
        raise InvalidIntentShape("Intent must be a JSON object", candidate)

    missing = [name for name in INTENT_FIELDS if name not in candidate]
    if missing:
        raise InvalidIntentShape(f"Missing fields {', '.join(missing)}", candidate)

    for name in INTENT_FIELDS:
        if not isinstance(candidate[name], str):
            raise InvalidIntentShape(f"Field '{name}' must be a string", candidate)

    for name in ("amount", "nonce"):
        if not _UINT_RE.fullmatch(candidate[name]):
            raise InvalidIntentShape(f"Field '{name}' must be a base-unit integer string", candidate)

    for name in ("agent", "recipient"):
        if not _ADDRESS_RE.fullmatch(candidate[name]):
            raise InvalidIntentShape(f"Field '{name}' is not an address", candidate)

    return PaymentIntent(**{name: candidate[name] for name in INTENT_FIELDS})
