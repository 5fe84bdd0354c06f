"""
Intent proposal.

Flow:
1. Allocate a nonce for the agent
2. Render the policy-constrained prompt
3. Ask the model (function call first, JSON text fallback)
4. Surface the reject sentinel as AgentRejected
5. Validate the candidate against the intent schema and the request context

The model is untrusted. Its adherence to policy is advisory; the ledger
re-checks limits, recipient and cooldown independently.
"""

from __future__ import annotations

import logging

from .errors import AgentRejected, InvalidIntentShape, NoProposal
from .model import ModelClient, StructuredCall, TextJson, Unparseable, classify_reply
from .nonce import NonceAllocator
from .prompt import build_prompt
from .schema import INTENT_FUNCTION, AgentInput, PaymentIntent, normalize_address, parse_rejection, validate_intent

logger = logging.getLogger(__name__)


class IntentProposer:
    """Turns a natural-language request into a validated PaymentIntent."""

    def __init__(self, model: ModelClient, nonces: NonceAllocator):
        self.model = model
        self.nonces = nonces

    def propose_payment(self, agent_input: AgentInput) -> PaymentIntent:
        nonce = self.nonces.next_nonce(agent_input.agent_address)
        prompt = build_prompt(agent_input, nonce)
        logger.debug("Proposal prompt for %s:\n%s", agent_input.agent_address, prompt)

        reply = self.model.complete(prompt, INTENT_FUNCTION)
        output = classify_reply(reply)

        if isinstance(output, StructuredCall):
            candidate = output.arguments
            source = "function call"
        elif isinstance(output, TextJson):
            candidate = output.payload
            source = "text"
        elif isinstance(output, Unparseable):
            logger.warning("Model produced no usable proposal for %s", agent_input.agent_address)
            raise NoProposal(output.raw)
        else:
            raise TypeError(f"Unexpected model output: {output!r}")

        rejection = parse_rejection(candidate)
        if rejection is not None:
            logger.info("Agent declined request for %s: %s", agent_input.agent_address, rejection.reason)
            raise AgentRejected(rejection.reason)

        try:
            intent = validate_intent(candidate)
            _check_bound_to_request(intent, agent_input.agent_address, nonce)
        except InvalidIntentShape as exc:
            logger.warning("Invalid intent shape from %s: %s", source, exc)
            raise

        logger.info(
            "Proposed intent via %s: agent=%s recipient=%s amount=%s nonce=%s",
            source,
            intent.agent,
            intent.recipient,
            intent.amount,
            intent.nonce,
        )
        return intent


def _check_bound_to_request(intent: PaymentIntent, agent_address: str, nonce: str) -> None:
    if normalize_address(intent.agent) != normalize_address(agent_address):
        raise InvalidIntentShape("Intent agent does not match requesting agent", intent.to_dict())
    if intent.nonce != nonce:
        raise InvalidIntentShape(f"Intent nonce does not match allocated nonce {nonce}", intent.to_dict())
