"""
End-to-end payment flow.

Flow:
1. Read a fresh policy snapshot from the ledger
2. Cooldown preflight (advisory)
3. Propose an intent through the model
4. Execute on the ledger and await confirmation

Per-payment states:

    REQUESTED -> PROPOSED -> REJECTED | SUBMITTED
    SUBMITTED -> CONFIRMED | REVERTED
    REQUESTED -> REJECTED

REJECTED, CONFIRMED and REVERTED are terminal. Connectivity failures are not
a state: TransientError propagates so the caller can decide whether to retry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional, TypeVar

from .errors import ChainRejected, ConfirmationPending, CooldownActive, PgapError, ProposalError, TransientError
from .executor import IntentExecutor
from .ledger import TreasuryClient
from .model import ModelClient
from .nonce import NonceAllocator
from .policy import CooldownGuard, PolicyReader, build_agent_input
from .proposer import IntentProposer
from .schema import PaymentIntent, PolicySnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaymentState(str, Enum):
    REQUESTED = "requested"
    PROPOSED = "proposed"
    REJECTED = "rejected"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


_TRANSITIONS = {
    PaymentState.REQUESTED: {PaymentState.PROPOSED, PaymentState.REJECTED},
    PaymentState.PROPOSED: {PaymentState.REJECTED, PaymentState.SUBMITTED},
    PaymentState.SUBMITTED: {PaymentState.CONFIRMED, PaymentState.REVERTED},
    PaymentState.REJECTED: set(),
    PaymentState.CONFIRMED: set(),
    PaymentState.REVERTED: set(),
}


@dataclass
class PaymentRecord:
    """Progress of one payment request through the pipeline."""

    request_text: str
    agent: str
    state: PaymentState = PaymentState.REQUESTED
    policy: Optional[PolicySnapshot] = None
    intent: Optional[PaymentIntent] = None
    tx_hash: Optional[str] = None
    error: Optional[PgapError] = None
    history: list[PaymentState] = field(default_factory=lambda: [PaymentState.REQUESTED])

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    @property
    def success(self) -> bool:
        return self.state == PaymentState.CONFIRMED

    @property
    def reason(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def advance(self, new_state: PaymentState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal payment transition {self.state.value} -> {new_state.value}")
        logger.debug("Payment for %s: %s -> %s", self.agent, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "agent": self.agent,
            "request": self.request_text,
            "intent": self.intent.to_dict() if self.intent else None,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
            "history": [s.value for s in self.history],
        }


class PaymentPipeline:
    """Orchestrates policy read, cooldown preflight, proposal and execution."""

    def __init__(
        self,
        policy_reader: PolicyReader,
        cooldown_guard: CooldownGuard,
        proposer: IntentProposer,
        executor: IntentExecutor,
    ):
        self.policy_reader = policy_reader
        self.cooldown_guard = cooldown_guard
        self.proposer = proposer
        self.executor = executor

    @classmethod
    def build(
        cls,
        treasury: TreasuryClient,
        model: ModelClient,
        nonces: Optional[NonceAllocator] = None,
        clock: Callable[[], float] = time.time,
    ) -> "PaymentPipeline":
        """Wire every component around one treasury client and one model client."""
        return cls(
            policy_reader=PolicyReader(treasury),
            cooldown_guard=CooldownGuard(treasury, clock=clock),
            proposer=IntentProposer(model, nonces or NonceAllocator(clock=clock)),
            executor=IntentExecutor(treasury),
        )

    def run(
        self,
        request_text: str,
        agent_address: str,
        allowed_recipients: Iterable[str],
        check_cooldown: bool = True,
    ) -> PaymentRecord:
        record = PaymentRecord(request_text=request_text, agent=agent_address)

        snapshot = self.policy_reader.get_policy(agent_address)
        record.policy = snapshot

        if check_cooldown:
            try:
                self.cooldown_guard.ensure_cooldown_elapsed(agent_address, snapshot.cooldown_seconds)
            except CooldownActive as exc:
                record.error = exc
                record.advance(PaymentState.REJECTED)
                return record

        agent_input = build_agent_input(request_text, agent_address, snapshot, allowed_recipients)
        try:
            record.intent = self.proposer.propose_payment(agent_input)
        except ProposalError as exc:
            record.error = exc
            record.advance(PaymentState.REJECTED)
            return record
        record.advance(PaymentState.PROPOSED)

        record.advance(PaymentState.SUBMITTED)
        try:
            record.tx_hash = self.executor.execute_payment(record.intent)
        except ChainRejected as exc:
            record.error = exc
            record.tx_hash = exc.tx_hash
            record.advance(PaymentState.REVERTED)
            return record

        record.advance(PaymentState.CONFIRMED)
        return record


def call_with_retry(
    fn: Callable[[], T],
    max_retries: int = 2,
    retry_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Caller-side retry for connectivity failures only.

    Business outcomes (rejections, reverts, invalid shapes) are returned or
    raised untouched. ``ConfirmationPending`` is never retried: the submitted
    transaction may still confirm, and a retry would propose a second payment.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except ConfirmationPending:
            raise
        except TransientError as exc:
            if attempt >= max_retries:
                raise
            delay = max(retry_delay * (attempt + 1), exc.retry_after)
            logger.info(
                "Retryable error (attempt %d/%d): %s",
                attempt + 1,
                max_retries + 1,
                exc,
            )
            sleep(delay)
            attempt += 1
