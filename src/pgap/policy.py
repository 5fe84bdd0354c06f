"""Read-only policy queries and the cooldown preflight."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from .errors import CooldownActive
from .ledger import TreasuryClient
from .schema import AgentInput, PolicySnapshot, PolicyView, normalize_address, to_uint

logger = logging.getLogger(__name__)


class PolicyReader:
    """Fetches a fresh policy snapshot on every call. Nothing is cached."""

    def __init__(self, treasury: TreasuryClient):
        self.treasury = treasury

    def get_policy(self, agent_address: str) -> PolicySnapshot:
        agent = normalize_address(agent_address)
        limits = self.treasury.get_policy_limits()
        spent = self.treasury.get_spent_today(agent)
        snapshot = PolicySnapshot(
            per_tx_limit=limits.per_tx_limit,
            daily_limit=limits.daily_limit,
            cooldown_seconds=limits.cooldown_seconds,
            spent_today=spent,
        )
        logger.info(
            "Policy for %s: perTx=%d daily=%d cooldown=%ds spent=%d",
            agent,
            snapshot.per_tx_limit,
            snapshot.daily_limit,
            snapshot.cooldown_seconds,
            snapshot.spent_today,
        )
        return snapshot


class CooldownGuard:
    """Advisory preflight. The ledger re-checks cooldown when executing."""

    def __init__(self, treasury: TreasuryClient, clock: Callable[[], float] = time.time):
        self.treasury = treasury
        self._clock = clock

    def ensure_cooldown_elapsed(self, agent_address: str, cooldown_seconds: int | str) -> None:
        cooldown = to_uint(cooldown_seconds, "cooldown_seconds")
        if cooldown == 0:
            return

        agent = normalize_address(agent_address)
        last_payment = self.treasury.last_payment_time(agent)
        if last_payment == 0:
            return

        remaining = last_payment + cooldown - int(self._clock())
        if remaining > 0:
            logger.info("Cooldown active for %s: %ds remaining", agent, remaining)
            raise CooldownActive(wait_seconds=remaining)


def build_agent_input(
    request_text: str,
    agent_address: str,
    snapshot: PolicySnapshot,
    allowed_recipients: Iterable[str],
) -> AgentInput:
    """Assemble the model's view of one request from a fresh snapshot."""
    return AgentInput(
        request_text=request_text,
        agent_address=normalize_address(agent_address),
        policy=PolicyView.from_snapshot(snapshot, allowed_recipients),
    )
