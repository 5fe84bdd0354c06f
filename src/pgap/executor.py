"""Submission of validated intents to the Treasury ledger."""

from __future__ import annotations

import logging

from .errors import ChainRejected
from .ledger import TreasuryClient
from .schema import PaymentIntent, validate_intent

logger = logging.getLogger(__name__)


class IntentExecutor:
    """Submits one intent and blocks until the ledger confirms or rejects it.

    There is no retry and no compensating action. A rejected intent must not
    be resubmitted; a new payment needs a fresh proposal and a fresh nonce.
    """

    def __init__(self, treasury: TreasuryClient):
        self.treasury = treasury

    def execute_payment(self, intent: PaymentIntent) -> str:
        # Intents can be built by hand; nothing malformed reaches the ledger.
        intent = validate_intent(intent.to_dict())

        logger.info(
            "Executing payment: agent=%s recipient=%s amount=%s nonce=%s",
            intent.agent,
            intent.recipient,
            intent.amount,
            intent.nonce,
        )
        try:
            tx_hash = self.treasury.execute_payment(
                intent.agent,
                intent.recipient,
                intent.amount_base_units,
                intent.nonce_value,
            )
        except ChainRejected as exc:
            logger.warning("Ledger rejected nonce %s for %s: %s", intent.nonce, intent.agent, exc.reason.value)
            raise

        logger.info("Payment confirmed: %s", tx_hash)
        return tx_hash
