"""
Startup configuration.

Built once from the environment (and an optional ``.env`` file) and passed
by reference to every component. Problems are collected and raised together
as a single ``ConfigError`` so a misconfigured deployment fails before it
handles any request.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import dotenv_values, find_dotenv

from .errors import ConfigError
from .schema import is_address


DEFAULT_MODEL_NAME = "gemini-2.5-flash-lite"
DEFAULT_MODEL_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL_TIMEOUT_SECONDS = 30.0
DEFAULT_RPC_TIMEOUT_SECONDS = 30.0
DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 120.0

_PRIVATE_KEY_RE = re.compile(r"[0-9a-fA-F]{64}")


@dataclass(frozen=True)
class Config:
    rpc_url: Optional[str]
    treasury_address: Optional[str]
    private_key: Optional[str] = field(repr=False)
    model_api_key: str = field(repr=False)
    model_name: str = DEFAULT_MODEL_NAME
    model_base_url: Optional[str] = DEFAULT_MODEL_BASE_URL
    model_timeout_seconds: float = DEFAULT_MODEL_TIMEOUT_SECONDS
    rpc_timeout_seconds: float = DEFAULT_RPC_TIMEOUT_SECONDS
    confirmation_timeout_seconds: float = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS
    agent_address: Optional[str] = None
    recipient_address: Optional[str] = None

    @property
    def has_chain(self) -> bool:
        return bool(self.rpc_url and self.treasury_address and self.private_key)

    def summary(self) -> dict:
        """Non-secret view for display."""
        return {
            "rpc_url": self.rpc_url,
            "treasury_address": self.treasury_address,
            "model_name": self.model_name,
            "model_base_url": self.model_base_url,
            "model_timeout_seconds": self.model_timeout_seconds,
            "rpc_timeout_seconds": self.rpc_timeout_seconds,
            "confirmation_timeout_seconds": self.confirmation_timeout_seconds,
            "agent_address": self.agent_address,
            "recipient_address": self.recipient_address,
        }


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[Path] = None,
    require_chain: bool = True,
) -> Config:
    """Build a validated ``Config``.

    ``environ`` defaults to the process environment layered over the
    ``.env`` file; process variables win.
    """
    if environ is None:
        path = dotenv_path or find_dotenv(usecwd=True)
        file_values = {k: v for k, v in dotenv_values(path).items() if v is not None}
        env: dict[str, str] = {**file_values, **os.environ}
    else:
        env = dict(environ)

    problems: list[str] = []

    def get(name: str) -> Optional[str]:
        value = env.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    rpc_url = get("RPC_URL")
    treasury_address = get("TREASURY_ADDRESS")
    raw_private_key = get("PRIVATE_KEY")

    if require_chain:
        for name, value in (
            ("RPC_URL", rpc_url),
            ("TREASURY_ADDRESS", treasury_address),
            ("PRIVATE_KEY", raw_private_key),
        ):
            if value is None:
                problems.append(f"{name} is required")

    if rpc_url is not None and not _is_http_url(rpc_url):
        problems.append("RPC_URL must be an http(s) URL")
    if treasury_address is not None and not is_address(treasury_address):
        problems.append("TREASURY_ADDRESS must be a 0x-prefixed 20-byte hex address")

    private_key = None
    if raw_private_key is not None:
        try:
            private_key = normalize_private_key(raw_private_key)
        except ValueError as exc:
            problems.append(f"PRIVATE_KEY {exc}")

    model_api_key = get("MODEL_API_KEY") or get("GEMINI_API_KEY")
    if model_api_key is None:
        problems.append("MODEL_API_KEY (or GEMINI_API_KEY) is required")

    model_base_url = get("MODEL_BASE_URL") or DEFAULT_MODEL_BASE_URL
    if not _is_http_url(model_base_url):
        problems.append("MODEL_BASE_URL must be an http(s) URL")

    timeouts = {}
    for name, default in (
        ("MODEL_TIMEOUT_SECONDS", DEFAULT_MODEL_TIMEOUT_SECONDS),
        ("RPC_TIMEOUT_SECONDS", DEFAULT_RPC_TIMEOUT_SECONDS),
        ("CONFIRMATION_TIMEOUT_SECONDS", DEFAULT_CONFIRMATION_TIMEOUT_SECONDS),
    ):
        raw = get(name)
        if raw is None:
            timeouts[name] = default
            continue
        try:
            value = float(raw)
        except ValueError:
            problems.append(f"{name} must be a number of seconds")
            continue
        if not 0 < value < float("inf"):
            problems.append(f"{name} must be > 0")
            continue
        timeouts[name] = value

    optional_addresses = {}
    for name in ("AGENT_ADDRESS", "RECIPIENT_ADDRESS"):
        value = get(name)
        if value is not None and not is_address(value):
            problems.append(f"{name} must be a 0x-prefixed 20-byte hex address")
        optional_addresses[name] = value

    if problems:
        raise ConfigError(problems)

    return Config(
        rpc_url=rpc_url,
        treasury_address=treasury_address,
        private_key=private_key,
        model_api_key=model_api_key,
        model_name=get("MODEL_NAME") or DEFAULT_MODEL_NAME,
        model_base_url=model_base_url,
        model_timeout_seconds=timeouts["MODEL_TIMEOUT_SECONDS"],
        rpc_timeout_seconds=timeouts["RPC_TIMEOUT_SECONDS"],
        confirmation_timeout_seconds=timeouts["CONFIRMATION_TIMEOUT_SECONDS"],
        agent_address=optional_addresses["AGENT_ADDRESS"],
        recipient_address=optional_addresses["RECIPIENT_ADDRESS"],
    )


def normalize_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith(("0x", "0X")):
        candidate = candidate[2:]
    if not _PRIVATE_KEY_RE.fullmatch(candidate):
        raise ValueError("must be a 32-byte hex string")
    return "0x" + candidate.lower()


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)
