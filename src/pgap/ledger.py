"""
Treasury ledger clients.

The Treasury contract is the only authority on limits, cooldowns, the
recipient allow-list and nonce uniqueness. Clients here read its policy and
submit ``executePayment`` calls; they never decide policy themselves.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import keccak
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from .errors import ChainRejected, ConfirmationPending, RevertReason, TransientError, UnknownRevert
from .schema import normalize_address

logger = logging.getLogger(__name__)


SECONDS_PER_DAY = 86_400

TREASURY_ERRORS = {
    RevertReason.AMOUNT_EXCEEDS_PER_TX_LIMIT: "AmountExceedsPerTxLimit()",
    RevertReason.DAILY_LIMIT_EXCEEDED: "DailyLimitExceeded()",
    RevertReason.COOLDOWN_NOT_PASSED: "CooldownNotPassed()",
    RevertReason.NONCE_ALREADY_USED: "NonceAlreadyUsed()",
    RevertReason.RECIPIENT_NOT_ALLOWED: "RecipientNotAllowed()",
    RevertReason.AGENT_NOT_AUTHORIZED: "AgentNotAuthorized()",
    RevertReason.TREASURY_PAUSED: "TreasuryPaused()",
}


def error_selector(signature: str) -> str:
    """4-byte selector of a Solidity error signature, as 0x-hex."""
    return "0x" + keccak(text=signature)[:4].hex()


REVERT_SELECTORS = {error_selector(sig): reason for reason, sig in TREASURY_ERRORS.items()}


def decode_revert(data: Optional[str]) -> Optional[RevertReason]:
    """Map revert data to a known Treasury error, or None."""
    if not isinstance(data, str):
        return None
    candidate = data.strip().lower()
    if not candidate.startswith("0x") or len(candidate) < 10:
        return None
    return REVERT_SELECTORS.get(candidate[:10])


TREASURY_ABI = [
    {
        "type": "function",
        "name": "executePayment",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "agent", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getPolicyLimits",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "perTxLimit", "type": "uint256"},
            {"name": "dailyLimit", "type": "uint256"},
            {"name": "cooldownSeconds", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "getAgentSpendingStatus",
        "stateMutability": "view",
        "inputs": [{"name": "agent", "type": "address"}],
        "outputs": [
            {"name": "spentToday", "type": "uint256"},
            {"name": "dayStart", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "lastPaymentTime",
        "stateMutability": "view",
        "inputs": [{"name": "agent", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
] + [
    {"type": "error", "name": sig[:-2], "inputs": []}
    for sig in TREASURY_ERRORS.values()
]


@dataclass(frozen=True)
class PolicyLimits:
    per_tx_limit: int
    daily_limit: int
    cooldown_seconds: int


class TreasuryClient(Protocol):
    def get_policy_limits(self) -> PolicyLimits: ...

    def get_spent_today(self, agent: str) -> int: ...

    def last_payment_time(self, agent: str) -> int: ...

    def execute_payment(self, agent: str, recipient: str, amount: int, nonce: int) -> str: ...


@contextmanager
def _rpc_errors(action: str):
    try:
        yield
    except ContractLogicError:
        raise
    except Web3RPCError as exc:
        raise TransientError(f"{action} refused by node: {exc}") from exc
    except requests.exceptions.Timeout as exc:
        raise TransientError(f"{action} timed out: {exc}") from exc
    except requests.exceptions.ConnectionError as exc:
        raise TransientError(f"{action} connection failed: {exc}") from exc
    except requests.exceptions.RequestException as exc:
        raise TransientError(f"{action} failed: {exc}") from exc


def _revert_data(exc: ContractLogicError) -> Optional[str]:
    data = getattr(exc, "data", None)
    if isinstance(data, str):
        return data
    if exc.args and isinstance(exc.args[0], str) and exc.args[0].startswith("0x"):
        return exc.args[0]
    return None


def _rejection_from(exc: ContractLogicError, tx_hash: Optional[str] = None) -> ChainRejected:
    data = _revert_data(exc)
    reason = decode_revert(data)
    if reason is None:
        return UnknownRevert(data=data, tx_hash=tx_hash)
    return ChainRejected(reason, tx_hash=tx_hash)


class Web3Treasury:
    """Treasury client over an EVM JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        treasury_address: str,
        account: LocalAccount,
        rpc_timeout_seconds: float = 30.0,
        confirmation_timeout_seconds: float = 120.0,
        poll_latency: float = 1.0,
        web3: Optional[Web3] = None,
    ):
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": rpc_timeout_seconds}))
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(treasury_address),
            abi=TREASURY_ABI,
        )
        self.account = account
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.poll_latency = poll_latency
        logger.debug("Treasury client initialized for %s at %s", rpc_url, treasury_address)

    @classmethod
    def from_config(cls, config) -> "Web3Treasury":
        return cls(
            rpc_url=config.rpc_url,
            treasury_address=config.treasury_address,
            account=Account.from_key(config.private_key),
            rpc_timeout_seconds=config.rpc_timeout_seconds,
            confirmation_timeout_seconds=config.confirmation_timeout_seconds,
        )

    def get_policy_limits(self) -> PolicyLimits:
        with _rpc_errors("getPolicyLimits"):
            per_tx, daily, cooldown = self.contract.functions.getPolicyLimits().call()
        return PolicyLimits(per_tx_limit=int(per_tx), daily_limit=int(daily), cooldown_seconds=int(cooldown))

    def get_spent_today(self, agent: str) -> int:
        with _rpc_errors("getAgentSpendingStatus"):
            status = self.contract.functions.getAgentSpendingStatus(Web3.to_checksum_address(agent)).call()
        return int(status[0])

    def last_payment_time(self, agent: str) -> int:
        with _rpc_errors("lastPaymentTime"):
            return int(self.contract.functions.lastPaymentTime(Web3.to_checksum_address(agent)).call())

    def execute_payment(self, agent: str, recipient: str, amount: int, nonce: int) -> str:
        fn = self.contract.functions.executePayment(
            Web3.to_checksum_address(agent),
            Web3.to_checksum_address(recipient),
            int(amount),
            int(nonce),
        )

        # Gas estimation inside build_transaction surfaces most reverts before submission.
        try:
            with _rpc_errors("executePayment preparation"):
                tx = fn.build_transaction(
                    {
                        "from": self.account.address,
                        "nonce": self.web3.eth.get_transaction_count(self.account.address, "pending"),
                        "chainId": self.web3.eth.chain_id,
                    }
                )
        except ContractLogicError as exc:
            raise _rejection_from(exc) from exc

        signed = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(signed.hash)

        try:
            self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as exc:
            raise _rejection_from(exc) from exc
        except requests.exceptions.Timeout as exc:
            # The node may have accepted the transaction before the response was lost.
            raise ConfirmationPending(tx_hash, self.confirmation_timeout_seconds) from exc
        except Web3RPCError as exc:
            if "already known" not in str(exc).lower():
                raise TransientError(f"Node refused executePayment tx {tx_hash}: {exc}") from exc
            logger.info("Node already holds tx %s; waiting for it", tx_hash)
        except requests.exceptions.RequestException as exc:
            raise TransientError(f"executePayment submission failed: {exc}") from exc
        logger.info("Submitted executePayment tx %s (agent=%s nonce=%s)", tx_hash, agent, nonce)

        # The transaction is in a mempool now; failures are pending, not retryable.
        try:
            with _rpc_errors("executePayment confirmation"):
                receipt = self.web3.eth.wait_for_transaction_receipt(
                    tx_hash,
                    timeout=self.confirmation_timeout_seconds,
                    poll_latency=self.poll_latency,
                )
        except (TimeExhausted, TransientError) as exc:
            raise ConfirmationPending(tx_hash, self.confirmation_timeout_seconds) from exc

        if receipt["status"] == 1:
            return tx_hash

        raise self._replay_revert(fn, tx_hash, receipt["blockNumber"])

    def _replay_revert(self, fn, tx_hash: str, block_number: int) -> ChainRejected:
        """Recover the revert reason of a mined, failed transaction."""
        try:
            with _rpc_errors("revert replay"):
                fn.call({"from": self.account.address}, block_identifier=block_number)
        except ContractLogicError as exc:
            return _rejection_from(exc, tx_hash=tx_hash)
        except TransientError:
            logger.warning("Could not replay reverted tx %s", tx_hash)
        return UnknownRevert(tx_hash=tx_hash)


class LocalTreasury:
    """In-memory stand-in for the Treasury contract.

    Enforces the same checks, in the same order, as the on-chain contract and
    is suitable for local development, demos and tests.
    """

    def __init__(
        self,
        per_tx_limit: int,
        daily_limit: int,
        cooldown_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = PolicyLimits(
            per_tx_limit=int(per_tx_limit),
            daily_limit=int(daily_limit),
            cooldown_seconds=int(cooldown_seconds),
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._paused = False
        self._agents: set[str] = set()
        self._recipients: set[str] = set()
        self._used_nonces: dict[str, set[int]] = {}
        self._spent: dict[str, tuple[int, int]] = {}
        self._last_payment: dict[str, int] = {}
        self.payments: list[dict] = []

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = bool(paused)

    def authorize_agent(self, agent: str, allowed: bool = True) -> None:
        normalized = normalize_address(agent)
        with self._lock:
            if allowed:
                self._agents.add(normalized)
            else:
                self._agents.discard(normalized)

    def allow_recipient(self, recipient: str, allowed: bool = True) -> None:
        normalized = normalize_address(recipient)
        with self._lock:
            if allowed:
                self._recipients.add(normalized)
            else:
                self._recipients.discard(normalized)

    def get_policy_limits(self) -> PolicyLimits:
        return self.limits

    def get_spent_today(self, agent: str) -> int:
        normalized = normalize_address(agent)
        with self._lock:
            return self._spent_today(normalized, self._now())

    def last_payment_time(self, agent: str) -> int:
        normalized = normalize_address(agent)
        with self._lock:
            return self._last_payment.get(normalized, 0)

    def execute_payment(self, agent: str, recipient: str, amount: int, nonce: int) -> str:
        normalized_agent = normalize_address(agent)
        normalized_recipient = normalize_address(recipient)
        amount = int(amount)
        nonce = int(nonce)

        with self._lock:
            now = self._now()
            if self._paused:
                raise ChainRejected(RevertReason.TREASURY_PAUSED)
            if normalized_agent not in self._agents:
                raise ChainRejected(RevertReason.AGENT_NOT_AUTHORIZED)
            if nonce in self._used_nonces.get(normalized_agent, set()):
                raise ChainRejected(RevertReason.NONCE_ALREADY_USED)
            if normalized_recipient not in self._recipients:
                raise ChainRejected(RevertReason.RECIPIENT_NOT_ALLOWED)
            if amount > self.limits.per_tx_limit:
                raise ChainRejected(RevertReason.AMOUNT_EXCEEDS_PER_TX_LIMIT)
            spent = self._spent_today(normalized_agent, now)
            if self.limits.daily_limit and spent + amount > self.limits.daily_limit:
                raise ChainRejected(RevertReason.DAILY_LIMIT_EXCEEDED)
            last = self._last_payment.get(normalized_agent, 0)
            if self.limits.cooldown_seconds and last and now < last + self.limits.cooldown_seconds:
                raise ChainRejected(RevertReason.COOLDOWN_NOT_PASSED)

            self._used_nonces.setdefault(normalized_agent, set()).add(nonce)
            self._spent[normalized_agent] = (now // SECONDS_PER_DAY, spent + amount)
            self._last_payment[normalized_agent] = now
            tx_hash = "0x" + keccak(
                text=f"{normalized_agent}:{normalized_recipient}:{amount}:{nonce}:{len(self.payments)}"
            ).hex()
            self.payments.append(
                {
                    "tx_hash": tx_hash,
                    "agent": normalized_agent,
                    "recipient": normalized_recipient,
                    "amount": amount,
                    "nonce": nonce,
                    "timestamp": now,
                }
            )

        logger.info("Local treasury executed payment %s", tx_hash)
        return tx_hash

    def _now(self) -> int:
        return int(self._clock())

    def _spent_today(self, agent: str, now: int) -> int:
        day, spent = self._spent.get(agent, (None, 0))
        return spent if day == now // SECONDS_PER_DAY else 0
