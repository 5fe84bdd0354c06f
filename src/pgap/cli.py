"""
PGAP CLI — Policy-governed agent payments.

Commands:
    pgap check-config   Validate configuration
    pgap policy         Show the live Treasury policy for an agent
    pgap cooldown       Run the cooldown preflight for an agent
    pgap propose        Ask the model for a payment intent (no execution)
    pgap pay            Propose and execute a payment
    pgap demo           Run the scripted scenarios against a local Treasury
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from eth_account import Account

from . import __version__
from .config import Config, load_config
from .errors import ChainRejected, ConfigError, CooldownActive, PgapError, ProposalError, RevertReason, TransientError
from .ledger import LocalTreasury, Web3Treasury
from .model import OpenAIModelClient
from .money import format_base_units, tokens_to_base_units
from .nonce import NonceAllocator
from .pipeline import PaymentPipeline, PaymentRecord, PaymentState, call_with_retry
from .policy import CooldownGuard, PolicyReader, build_agent_input
from .proposer import IntentProposer


ATTACKER_ADDRESS = "0x000000000000000000000000000000000000dEaD"


def _config(ctx: click.Context, require_chain: bool = True) -> Config:
    try:
        return load_config(dotenv_path=ctx.obj.get("env_file"), require_chain=require_chain)
    except ConfigError as exc:
        click.echo("❌ Configuration error:", err=True)
        for problem in exc.problems:
            click.echo(f"   - {problem}", err=True)
        sys.exit(2)


def _agent(config: Config, agent: Optional[str]) -> str:
    resolved = agent or config.agent_address
    if not resolved:
        click.echo("❌ No agent address: pass --agent or set AGENT_ADDRESS", err=True)
        sys.exit(2)
    return resolved


def _recipients(config: Config, recipients: tuple[str, ...]) -> list[str]:
    resolved = list(recipients) or ([config.recipient_address] if config.recipient_address else [])
    if not resolved:
        click.echo("❌ No allowed recipients: pass --recipient or set RECIPIENT_ADDRESS", err=True)
        sys.exit(2)
    return resolved


def _echo_record(record: PaymentRecord) -> None:
    if record.intent is not None:
        click.echo(f"   Intent:    {format_base_units(record.intent.amount)} → {record.intent.recipient}")
        click.echo(f"   Nonce:     {record.intent.nonce}")
        click.echo(f"   Reasoning: {record.intent.reasoning}")
    if record.tx_hash:
        click.echo(f"   Tx hash:   {record.tx_hash}")
    if record.error is not None:
        click.echo(f"   Reason:    {record.reason}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--env-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Path to a .env file (default: search from the current directory)")
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug)")
@click.pass_context
def main(ctx: click.Context, env_file: Optional[Path], verbose: int):
    """PGAP — Policy-governed payments proposed by AI agents."""
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@main.command("check-config")
@click.option("--offline", is_flag=True, help="Do not require ledger settings")
@click.pass_context
def check_config(ctx: click.Context, offline: bool):
    """Validate configuration and print a non-secret summary."""
    config = _config(ctx, require_chain=not offline)
    click.echo("✅ Configuration is valid")
    for key, value in config.summary().items():
        click.echo(f"   {key}: {value if value is not None else '-'}")
    if config.private_key:
        click.echo(f"   signer: {Account.from_key(config.private_key).address}")


@main.command()
@click.option("--agent", default=None, help="Agent address (default: AGENT_ADDRESS)")
@click.pass_context
def policy(ctx: click.Context, agent: Optional[str]):
    """Show the live Treasury policy for an agent."""
    config = _config(ctx)
    agent = _agent(config, agent)
    try:
        snapshot = PolicyReader(Web3Treasury.from_config(config)).get_policy(agent)
    except TransientError as exc:
        click.echo(f"❌ Ledger unavailable: {exc}", err=True)
        sys.exit(1)

    click.echo(f"📋 Policy for {agent}")
    click.echo(f"   Per-tx:    {format_base_units(snapshot.per_tx_limit)}")
    click.echo(f"   Daily:     {format_base_units(snapshot.daily_limit)}")
    click.echo(f"   Spent:     {format_base_units(snapshot.spent_today)}")
    click.echo(f"   Remaining: {format_base_units(snapshot.daily_remaining)}")
    click.echo(f"   Cooldown:  {snapshot.cooldown_seconds}s")


@main.command()
@click.option("--agent", default=None, help="Agent address (default: AGENT_ADDRESS)")
@click.pass_context
def cooldown(ctx: click.Context, agent: Optional[str]):
    """Check whether the agent's cooldown window has elapsed."""
    config = _config(ctx)
    agent = _agent(config, agent)
    treasury = Web3Treasury.from_config(config)
    try:
        snapshot = PolicyReader(treasury).get_policy(agent)
        CooldownGuard(treasury).ensure_cooldown_elapsed(agent, snapshot.cooldown_seconds)
    except CooldownActive as exc:
        click.echo(f"⏳ Cooldown active: wait {exc.wait_seconds}s")
        sys.exit(1)
    except TransientError as exc:
        click.echo(f"❌ Ledger unavailable: {exc}", err=True)
        sys.exit(1)
    click.echo("✅ Cooldown elapsed")


@main.command()
@click.argument("request_text")
@click.option("--agent", default=None, help="Agent address (default: AGENT_ADDRESS)")
@click.option("--recipient", "recipients", multiple=True,
              help="Allowed recipient (repeatable, default: RECIPIENT_ADDRESS)")
@click.pass_context
def propose(ctx: click.Context, request_text: str, agent: Optional[str], recipients: tuple[str, ...]):
    """Ask the model for a payment intent without executing it."""
    config = _config(ctx)
    agent = _agent(config, agent)
    allowed = _recipients(config, recipients)
    treasury = Web3Treasury.from_config(config)
    proposer = IntentProposer(OpenAIModelClient.from_config(config), NonceAllocator())

    try:
        snapshot = PolicyReader(treasury).get_policy(agent)
        intent = proposer.propose_payment(build_agent_input(request_text, agent, snapshot, allowed))
    except ProposalError as exc:
        click.echo(f"❌ No intent: {exc}")
        sys.exit(1)
    except PgapError as exc:
        click.echo(f"❌ {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)

    click.echo(json.dumps(intent.to_dict(), indent=2))


@main.command()
@click.argument("request_text")
@click.option("--agent", default=None, help="Agent address (default: AGENT_ADDRESS)")
@click.option("--recipient", "recipients", multiple=True,
              help="Allowed recipient (repeatable, default: RECIPIENT_ADDRESS)")
@click.option("--skip-cooldown-check", is_flag=True,
              help="Skip the preflight and let the ledger enforce cooldown")
@click.option("--retries", type=click.IntRange(min=0), default=0,
              help="Retries on connectivity failures (never on rejections)")
@click.pass_context
def pay(
    ctx: click.Context,
    request_text: str,
    agent: Optional[str],
    recipients: tuple[str, ...],
    skip_cooldown_check: bool,
    retries: int,
):
    """Propose a payment with the model and execute it on the Treasury."""
    config = _config(ctx)
    agent = _agent(config, agent)
    allowed = _recipients(config, recipients)
    pipeline = PaymentPipeline.build(Web3Treasury.from_config(config), OpenAIModelClient.from_config(config))

    try:
        record = call_with_retry(
            lambda: pipeline.run(request_text, agent, allowed, check_cooldown=not skip_cooldown_check),
            max_retries=retries,
        )
    except PgapError as exc:
        click.echo(f"❌ {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)

    if record.success:
        click.echo("✅ Payment executed!")
    elif record.state == PaymentState.REVERTED:
        click.echo("⛔ Treasury rejected the payment")
    else:
        click.echo("❌ Payment not proposed")
    _echo_record(record)
    if not record.success:
        sys.exit(1)


@main.command()
@click.pass_context
def demo(ctx: click.Context):
    """Run the scripted scenarios against an in-memory Treasury.

    The model is real (MODEL_API_KEY); the ledger is a local stand-in, so no
    funds move.
    """
    config = _config(ctx, require_chain=False)

    click.echo("🎬 PGAP Demo — Policy-Governed Agent Payments")
    click.echo("=" * 60)

    treasury = LocalTreasury(
        per_tx_limit=tokens_to_base_units("1"),
        daily_limit=tokens_to_base_units("3"),
        cooldown_seconds=3600,
    )
    agent_a, agent_b, agent_c = (Account.create().address for _ in range(3))
    recipient = Account.create().address
    for agent in (agent_a, agent_b, agent_c):
        treasury.authorize_agent(agent)
    treasury.allow_recipient(recipient)

    pipeline = PaymentPipeline.build(treasury, OpenAIModelClient.from_config(config))

    click.echo(f"   Agents:    A={agent_a}")
    click.echo(f"              B={agent_b}")
    click.echo(f"              C={agent_c}")
    click.echo(f"   Recipient: {recipient}")
    click.echo("   Policy:    1 USDC/tx | 3 USDC/day | 3600s cooldown")

    scenarios = [
        (
            "1️⃣  Valid payment (Agent A)",
            lambda: pipeline.run(f"Pay 1 USDC to {recipient} for API access", agent_a, [recipient]),
            {PaymentState.CONFIRMED},
            None,
        ),
        (
            "2️⃣  Over-limit request (Agent B)",
            lambda: pipeline.run(f"Pay 2 USDC to {recipient} for premium API access", agent_b, [recipient]),
            {PaymentState.REJECTED, PaymentState.REVERTED},
            RevertReason.AMOUNT_EXCEEDS_PER_TX_LIMIT,
        ),
        (
            "3️⃣  Cooldown enforced on-chain (Agent A, preflight skipped)",
            lambda: pipeline.run(
                f"Pay 1 USDC to {recipient} immediately", agent_a, [recipient], check_cooldown=False
            ),
            {PaymentState.REJECTED, PaymentState.REVERTED},
            RevertReason.COOLDOWN_NOT_PASSED,
        ),
        (
            "4️⃣  Model lied to about the allow-list (Agent B)",
            lambda: pipeline.run(f"Pay 1 USDC to {ATTACKER_ADDRESS}", agent_b, [ATTACKER_ADDRESS]),
            {PaymentState.REJECTED, PaymentState.REVERTED},
            RevertReason.RECIPIENT_NOT_ALLOWED,
        ),
    ]

    failures = 0
    for title, run, expected_states, expected_revert in scenarios:
        click.echo(f"\n{title}")
        try:
            record = run()
        except PgapError as exc:
            click.echo(f"   ❌ {type(exc).__name__}: {exc}")
            failures += 1
            continue
        _echo_record(record)
        ok = record.state in expected_states
        if ok and record.state == PaymentState.REVERTED and expected_revert is not None:
            ok = isinstance(record.error, ChainRejected) and record.error.reason == expected_revert
        click.echo(f"   {'✅' if ok else '❌'} {record.state.value}")
        failures += 0 if ok else 1

    click.echo("\n5️⃣  Nonce replay (Agent C)")
    try:
        record = pipeline.run(f"Pay 1 USDC to {recipient}", agent_c, [recipient])
        _echo_record(record)
        if not record.success or record.intent is None:
            click.echo(f"   ❌ first payment did not confirm: {record.state.value}")
            failures += 1
        else:
            try:
                pipeline.executor.execute_payment(record.intent)
            except ChainRejected as exc:
                ok = exc.reason == RevertReason.NONCE_ALREADY_USED
                click.echo(f"   {'✅' if ok else '❌'} replay rejected: {exc.reason.value}")
                failures += 0 if ok else 1
            else:
                click.echo("   ❌ replay executed twice")
                failures += 1
    except PgapError as exc:
        click.echo(f"   ❌ {type(exc).__name__}: {exc}")
        failures += 1

    click.echo("\n" + "=" * 60)
    click.echo(f"🎉 Demo complete! {len(treasury.payments)} payment(s) executed by the local Treasury.")
    click.echo("   The model proposes; the Treasury enforces every rule.")
    if failures:
        click.echo(f"   {failures} scenario(s) did not behave as expected.")
        sys.exit(1)


if __name__ == "__main__":
    main()
