"""Tests for the Treasury ledger clients and revert decoding."""

from types import SimpleNamespace

import pytest
import requests
from eth_account import Account
from eth_utils import keccak
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from pgap.errors import ChainRejected, ConfirmationPending, RevertReason, TransientError, UnknownRevert
from pgap.ledger import (
    REVERT_SELECTORS,
    TREASURY_ABI,
    TREASURY_ERRORS,
    LocalTreasury,
    Web3Treasury,
    _rejection_from,
    _rpc_errors,
    decode_revert,
    error_selector,
)

from conftest import COOLDOWN_SECONDS, DAILY_LIMIT, PER_TX_LIMIT


def reason_of(exc_info):
    return exc_info.value.reason


class TestRevertDecoding:
    def test_error_selector(self):
        assert error_selector("NonceAlreadyUsed()") == "0x" + keccak(text="NonceAlreadyUsed()")[:4].hex()
        assert len(error_selector("TreasuryPaused()")) == 10

    def test_every_reason_has_selector(self):
        assert set(REVERT_SELECTORS.values()) == set(TREASURY_ERRORS)
        assert RevertReason.UNKNOWN not in TREASURY_ERRORS

    def test_decode_known(self):
        selector = error_selector("DailyLimitExceeded()")
        assert decode_revert(selector) == RevertReason.DAILY_LIMIT_EXCEEDED
        assert decode_revert(selector.upper().replace("0X", "0x") + "00" * 32) == RevertReason.DAILY_LIMIT_EXCEEDED

    @pytest.mark.parametrize("data", [None, "", "0x", "0x1234", "0xdeadbeef", "deadbeefdead", 42])
    def test_decode_unknown(self, data):
        assert decode_revert(data) is None

    def test_rejection_from_known_data(self):
        data = error_selector("CooldownNotPassed()")
        exc = ContractLogicError("execution reverted", data=data)
        rejected = _rejection_from(exc, tx_hash="0xabc")
        assert type(rejected) is ChainRejected
        assert rejected.reason == RevertReason.COOLDOWN_NOT_PASSED
        assert rejected.tx_hash == "0xabc"

    def test_rejection_from_undecodable_data(self):
        rejected = _rejection_from(ContractLogicError("execution reverted: boom"))
        assert isinstance(rejected, UnknownRevert)
        assert rejected.reason == RevertReason.UNKNOWN

    def test_abi_declares_errors(self):
        names = {entry["name"] for entry in TREASURY_ABI if entry["type"] == "error"}
        assert names == {reason.value for reason in TREASURY_ERRORS}


class TestRpcErrors:
    def test_timeout_is_transient(self):
        with pytest.raises(TransientError, match="timed out"):
            with _rpc_errors("lastPaymentTime"):
                raise requests.exceptions.ReadTimeout("slow")

    def test_connection_error_is_transient(self):
        with pytest.raises(TransientError, match="connection failed"):
            with _rpc_errors("lastPaymentTime"):
                raise requests.exceptions.ConnectionError("refused")

    def test_http_error_is_transient(self):
        with pytest.raises(TransientError):
            with _rpc_errors("getPolicyLimits"):
                raise requests.exceptions.HTTPError("429 Too Many Requests")

    def test_node_error_is_transient(self):
        with pytest.raises(TransientError, match="refused by node"):
            with _rpc_errors("executePayment preparation"):
                raise Web3RPCError("nonce too low")

    def test_contract_revert_passes_through(self):
        with pytest.raises(ContractLogicError):
            with _rpc_errors("executePayment preparation"):
                raise ContractLogicError("execution reverted", data=error_selector("TreasuryPaused()"))

    def test_other_errors_propagate(self):
        with pytest.raises(KeyError):
            with _rpc_errors("lastPaymentTime"):
                raise KeyError("x")


class TestLocalTreasury:
    def test_executes_and_records(self, treasury, agent, recipient, clock):
        tx_hash = treasury.execute_payment(agent, recipient, 50, 1)

        assert tx_hash.startswith("0x") and len(tx_hash) == 66
        assert treasury.get_spent_today(agent) == 50
        assert treasury.last_payment_time(agent) == int(clock())
        assert treasury.payments[0]["amount"] == 50

    def test_paused_checked_first(self, treasury, recipient):
        treasury.set_paused(True)
        stranger = Account.create().address
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(stranger, recipient, PER_TX_LIMIT + 1, 1)
        assert reason_of(exc_info) == RevertReason.TREASURY_PAUSED

    def test_unauthorized_agent(self, treasury, recipient):
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(Account.create().address, recipient, 1, 1)
        assert reason_of(exc_info) == RevertReason.AGENT_NOT_AUTHORIZED

    def test_nonce_replay(self, treasury, agent, recipient, clock):
        treasury.execute_payment(agent, recipient, 10, 7)
        clock.advance(COOLDOWN_SECONDS)
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, 10, 7)
        assert reason_of(exc_info) == RevertReason.NONCE_ALREADY_USED
        assert len(treasury.payments) == 1

    def test_nonces_scoped_per_agent(self, treasury, agent, recipient):
        other = Account.create().address
        treasury.authorize_agent(other)
        treasury.execute_payment(agent, recipient, 10, 7)
        treasury.execute_payment(other, recipient, 10, 7)
        assert len(treasury.payments) == 2

    def test_recipient_not_allowed(self, treasury, agent):
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, Account.create().address, 1, 1)
        assert reason_of(exc_info) == RevertReason.RECIPIENT_NOT_ALLOWED

    def test_per_tx_limit(self, treasury, agent, recipient):
        treasury.execute_payment(agent, recipient, PER_TX_LIMIT, 1)
        assert treasury.get_spent_today(agent) == PER_TX_LIMIT

    def test_over_per_tx_limit(self, treasury, agent, recipient):
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, PER_TX_LIMIT + 1, 1)
        assert reason_of(exc_info) == RevertReason.AMOUNT_EXCEEDS_PER_TX_LIMIT

    def test_cooldown(self, treasury, agent, recipient, clock):
        treasury.execute_payment(agent, recipient, 10, 1)
        clock.advance(COOLDOWN_SECONDS - 1)
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, 10, 2)
        assert reason_of(exc_info) == RevertReason.COOLDOWN_NOT_PASSED

        clock.advance(1)
        treasury.execute_payment(agent, recipient, 10, 2)

    def test_daily_limit(self, treasury, agent, recipient, clock):
        for nonce in range(1, 4):
            treasury.execute_payment(agent, recipient, PER_TX_LIMIT, nonce)
            clock.advance(COOLDOWN_SECONDS)
        assert treasury.get_spent_today(agent) == DAILY_LIMIT

        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, 1, 4)
        assert reason_of(exc_info) == RevertReason.DAILY_LIMIT_EXCEEDED

    def test_daily_window_resets(self, agent, recipient, clock):
        treasury = LocalTreasury(per_tx_limit=100, daily_limit=100, cooldown_seconds=0, clock=clock)
        treasury.authorize_agent(agent)
        treasury.allow_recipient(recipient)

        treasury.execute_payment(agent, recipient, 100, 1)
        clock.advance(86_400)
        assert treasury.get_spent_today(agent) == 0
        treasury.execute_payment(agent, recipient, 100, 2)

    def test_daily_limit_checked_before_cooldown(self, agent, recipient, clock):
        treasury = LocalTreasury(per_tx_limit=100, daily_limit=100, cooldown_seconds=COOLDOWN_SECONDS, clock=clock)
        treasury.authorize_agent(agent)
        treasury.allow_recipient(recipient)

        treasury.execute_payment(agent, recipient, 100, 1)
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, 1, 2)
        assert reason_of(exc_info) == RevertReason.DAILY_LIMIT_EXCEEDED

    def test_rejection_leaves_state_untouched(self, treasury, agent, recipient):
        with pytest.raises(ChainRejected):
            treasury.execute_payment(agent, recipient, PER_TX_LIMIT + 1, 1)
        assert treasury.get_spent_today(agent) == 0
        assert treasury.last_payment_time(agent) == 0
        treasury.execute_payment(agent, recipient, 1, 1)

    def test_limits(self, treasury):
        limits = treasury.get_policy_limits()
        assert (limits.per_tx_limit, limits.daily_limit, limits.cooldown_seconds) == (
            PER_TX_LIMIT,
            DAILY_LIMIT,
            COOLDOWN_SECONDS,
        )


class FakeFunction:
    def __init__(self, result=None, build_error=None, call_error=None):
        self.result = result
        self.build_error = build_error
        self.call_error = call_error
        self.args = None
        self.calls = []

    def __call__(self, *args):
        self.args = args
        return self

    def call(self, *args, **kwargs):
        self.calls.append(kwargs)
        if self.call_error is not None:
            raise self.call_error
        return self.result

    def build_transaction(self, overrides):
        if self.build_error is not None:
            raise self.build_error
        return {
            "to": "0x" + "22" * 20,
            "value": 0,
            "gas": 100_000,
            "gasPrice": 1_000_000_000,
            "data": "0x",
            **overrides,
        }


class FakeEth:
    def __init__(self, functions, receipt=None, wait_error=None, send_error=None):
        self.functions = functions
        self.receipt = receipt
        self.wait_error = wait_error
        self.send_error = send_error
        self.chain_id = 31337
        self.sent = []

    def contract(self, address, abi):
        return SimpleNamespace(address=address, functions=SimpleNamespace(**self.functions))

    def get_transaction_count(self, address, block):
        return 0

    def send_raw_transaction(self, raw):
        self.sent.append(raw)
        if self.send_error is not None:
            raise self.send_error

    def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        if self.wait_error is not None:
            raise self.wait_error
        return self.receipt


TREASURY_ADDRESS = "0x" + "22" * 20


def make_web3_treasury(functions, **eth_kwargs):
    eth = FakeEth(functions, **eth_kwargs)
    treasury = Web3Treasury(
        rpc_url="http://localhost:8545",
        treasury_address=TREASURY_ADDRESS,
        account=Account.create(),
        web3=SimpleNamespace(eth=eth),
    )
    return treasury, eth


class TestWeb3Treasury:
    def test_reads(self, agent):
        treasury, _ = make_web3_treasury(
            {
                "getPolicyLimits": FakeFunction(result=[10, 100, 60]),
                "getAgentSpendingStatus": FakeFunction(result=[25, 1_699_920_000]),
                "lastPaymentTime": FakeFunction(result=1_699_920_500),
            }
        )
        limits = treasury.get_policy_limits()
        assert (limits.per_tx_limit, limits.daily_limit, limits.cooldown_seconds) == (10, 100, 60)
        assert treasury.get_spent_today(agent) == 25
        assert treasury.last_payment_time(agent) == 1_699_920_500

    def test_read_timeout_is_transient(self, agent):
        failing = FakeFunction(call_error=requests.exceptions.ReadTimeout("slow"))
        treasury, _ = make_web3_treasury({"lastPaymentTime": failing})
        with pytest.raises(TransientError):
            treasury.last_payment_time(agent)

    def test_confirmed_payment(self, agent, recipient):
        execute = FakeFunction()
        treasury, eth = make_web3_treasury(
            {"executePayment": execute},
            receipt={"status": 1, "blockNumber": 10},
        )
        tx_hash = treasury.execute_payment(agent, recipient, 50, 1_699_920_000_000)

        assert tx_hash.startswith("0x") and len(tx_hash) == 66
        assert len(eth.sent) == 1
        assert execute.args[2:] == (50, 1_699_920_000_000)

    def test_revert_during_estimation(self, agent, recipient):
        error = ContractLogicError("execution reverted", data=error_selector("NonceAlreadyUsed()"))
        treasury, eth = make_web3_treasury({"executePayment": FakeFunction(build_error=error)})
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, 50, 1)
        assert reason_of(exc_info) == RevertReason.NONCE_ALREADY_USED
        assert exc_info.value.tx_hash is None
        assert eth.sent == []

    def test_mined_revert_is_replayed(self, agent, recipient):
        replay_error = ContractLogicError("execution reverted", data=error_selector("CooldownNotPassed()"))
        execute = FakeFunction(call_error=replay_error)
        treasury, _ = make_web3_treasury(
            {"executePayment": execute},
            receipt={"status": 0, "blockNumber": 10},
        )
        with pytest.raises(ChainRejected) as exc_info:
            treasury.execute_payment(agent, recipient, 50, 1)
        assert reason_of(exc_info) == RevertReason.COOLDOWN_NOT_PASSED
        assert exc_info.value.tx_hash is not None
        assert execute.calls[0]["block_identifier"] == 10

    def test_mined_revert_without_reason(self, agent, recipient):
        treasury, _ = make_web3_treasury(
            {"executePayment": FakeFunction()},
            receipt={"status": 0, "blockNumber": 10},
        )
        with pytest.raises(UnknownRevert):
            treasury.execute_payment(agent, recipient, 50, 1)

    def test_confirmation_timeout_is_pending(self, agent, recipient):
        treasury, eth = make_web3_treasury(
            {"executePayment": FakeFunction()},
            wait_error=TimeExhausted("not mined"),
        )
        with pytest.raises(ConfirmationPending) as exc_info:
            treasury.execute_payment(agent, recipient, 50, 1)
        assert exc_info.value.tx_hash.startswith("0x")
        assert len(eth.sent) == 1

    def test_read_http_error_is_transient(self, agent):
        failing = FakeFunction(call_error=requests.exceptions.HTTPError("503 Service Unavailable"))
        treasury, _ = make_web3_treasury({"lastPaymentTime": failing})
        with pytest.raises(TransientError):
            treasury.last_payment_time(agent)

    def test_node_error_during_preparation_is_transient(self, agent, recipient):
        failing = FakeFunction(build_error=Web3RPCError("nonce too low"))
        treasury, eth = make_web3_treasury({"executePayment": failing})
        with pytest.raises(TransientError) as exc_info:
            treasury.execute_payment(agent, recipient, 50, 1)
        assert not isinstance(exc_info.value, ConfirmationPending)
        assert eth.sent == []

    def test_refused_submission_is_transient_not_pending(self, agent, recipient):
        treasury, _ = make_web3_treasury(
            {"executePayment": FakeFunction()},
            send_error=Web3RPCError("insufficient funds for gas * price + value"),
        )
        with pytest.raises(TransientError) as exc_info:
            treasury.execute_payment(agent, recipient, 50, 1)
        assert not isinstance(exc_info.value, ConfirmationPending)

    def test_submission_timeout_is_pending(self, agent, recipient):
        treasury, _ = make_web3_treasury(
            {"executePayment": FakeFunction()},
            send_error=requests.exceptions.ReadTimeout("slow"),
        )
        with pytest.raises(ConfirmationPending):
            treasury.execute_payment(agent, recipient, 50, 1)

    def test_already_known_submission_is_awaited(self, agent, recipient):
        treasury, _ = make_web3_treasury(
            {"executePayment": FakeFunction()},
            receipt={"status": 1, "blockNumber": 10},
            send_error=Web3RPCError("already known"),
        )
        assert treasury.execute_payment(agent, recipient, 50, 1).startswith("0x")
