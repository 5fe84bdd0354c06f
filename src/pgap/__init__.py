"""
PGAP — Policy-Governed Agent Payments.

Trust-minimized payments proposed by AI agents:
Model proposes an intent → schema validates it → Treasury enforces policy.
"""

__version__ = "0.1.0"

from .errors import (
    AgentRejected,
    ChainRejected,
    ConfigError,
    ConfirmationPending,
    CooldownActive,
    InvalidIntentShape,
    NoProposal,
    PgapError,
    RevertReason,
    TransientError,
    UnknownRevert,
)
from .config import Config, load_config
from .schema import AgentInput, PaymentIntent, PolicySnapshot, PolicyView, RejectionSignal, validate_intent
from .nonce import NonceAllocator
from .ledger import LocalTreasury, TreasuryClient, Web3Treasury
from .policy import CooldownGuard, PolicyReader, build_agent_input
from .model import OpenAIModelClient
from .proposer import IntentProposer
from .executor import IntentExecutor
from .pipeline import PaymentPipeline, PaymentRecord, PaymentState, call_with_retry

__all__ = [
    "PgapError", "ConfigError", "TransientError", "ConfirmationPending",
    "AgentRejected", "InvalidIntentShape", "NoProposal", "CooldownActive",
    "ChainRejected", "UnknownRevert", "RevertReason",
    "Config", "load_config",
    "AgentInput", "PaymentIntent", "PolicySnapshot", "PolicyView", "RejectionSignal", "validate_intent",
    "NonceAllocator", "LocalTreasury", "TreasuryClient", "Web3Treasury",
    "PolicyReader", "CooldownGuard", "build_agent_input",
    "OpenAIModelClient", "IntentProposer", "IntentExecutor",
    "PaymentPipeline", "PaymentRecord", "PaymentState", "call_with_retry",
]
