"""Shared fixtures: a controllable clock, a scripted model and a local Treasury."""

import json
import re

import pytest
from eth_account import Account

from pgap.ledger import LocalTreasury
from pgap.model import ModelReply


_NONCE_RE = re.compile(r"NONCE:\n(\d+)")
_AGENT_RE = re.compile(r"AGENT ADDRESS:\n(0x[0-9a-fA-F]{40})")

PER_TX_LIMIT = 100
DAILY_LIMIT = 300
COOLDOWN_SECONDS = 3600
START_TIME = 1_699_920_000.0  # 2023-11-14T00:00:00Z


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedModel:
    """Model client whose replies are produced by a function of the prompt."""

    def __init__(self, respond):
        self.respond = respond
        self.prompts: list[str] = []
        self.functions: list[dict] = []

    def complete(self, prompt: str, function: dict) -> ModelReply:
        self.prompts.append(prompt)
        self.functions.append(function)
        return self.respond(prompt)


def prompt_nonce(prompt: str) -> str:
    return _NONCE_RE.search(prompt).group(1)


def prompt_agent(prompt: str) -> str:
    return _AGENT_RE.search(prompt).group(1)


def intent_call(recipient: str, amount: str, **overrides):
    """Reply builder: a function call echoing the prompt's agent and nonce."""

    def respond(prompt: str) -> ModelReply:
        payload = {
            "agent": prompt_agent(prompt),
            "recipient": recipient,
            "amount": amount,
            "nonce": prompt_nonce(prompt),
            "reasoning": "within policy",
        }
        payload.update(overrides)
        return ModelReply(tool_arguments=json.dumps(payload))

    return respond


def rejection(reason: str):
    def respond(prompt: str) -> ModelReply:
        return ModelReply(text=json.dumps({"reject": True, "reason": reason}))

    return respond


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agent():
    return Account.create().address


@pytest.fixture
def recipient():
    return Account.create().address


@pytest.fixture
def treasury(clock, agent, recipient):
    t = LocalTreasury(
        per_tx_limit=PER_TX_LIMIT,
        daily_limit=DAILY_LIMIT,
        cooldown_seconds=COOLDOWN_SECONDS,
        clock=clock,
    )
    t.authorize_agent(agent)
    t.allow_recipient(recipient)
    return t
