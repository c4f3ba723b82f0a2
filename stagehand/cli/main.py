"""Stagehand CLI: multi-phase upgrade coordinator.

Usage:
    stagehand env new <name>              Create an environment
    stagehand env list                    List environments
    stagehand env show <name>             Show an environment manifest
    stagehand upgrade register <name>     Register an upgrade definition
    stagehand upgrade list                List registered upgrades
    stagehand deploy begin                Start an upgrade on an environment
    stagehand deploy run                  Advance the active upgrade
    stagehand deploy status               Show the active upgrade
    stagehand deploy cancel               Abort the active upgrade
    stagehand deploy history              List finished upgrades
    stagehand config                      Show current configuration
    stagehand version                     Print version

Examples:
    stagehand env new testnet --chain-id 11155111 --precedes mainnet
    stagehand upgrade register upgrade-v2 --path upgrades/v2 --create 1-create.s.sol --execute 2-execute.s.sol --to 2.0.0
    stagehand deploy begin --env testnet --upgrade upgrade-v2
    stagehand deploy run --env testnet --private-key $DEPLOYER_KEY
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

from stagehand import __version__
from stagehand.core.config import get_settings
from stagehand.core.errors import ErrorCode, StagehandError
from stagehand.core.logging import setup_logging
from stagehand.core.session import Session
from stagehand.core.types import DeployRecord, UpgradeDefinition, UpgradePhases, dump


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_PHASE_COLOR = {
    "created": _CYAN,
    "queued": _CYAN,
    "executing": _YELLOW,
    "complete": _GREEN,
    "failed": _RED,
}


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN} ___ _
/ __| |_ __ _ __ _ ___ |_  __ _ _ _  __| |
\__ \  _/ _` / _` / -_)| ' \/ _` | ' \/ _` |
|___/\__\__,_\__, \___||_||_\__,_|_||_\__,_|
             |___/{_RESET}
  {_DIM}Multi-phase upgrade coordinator v{__version__}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def _add_signing_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--private-key",
        default=os.environ.get("STAGEHAND_PRIVATE_KEY"),
        help="Signer (eoa) or proposer (multisig) key; defaults to $STAGEHAND_PRIVATE_KEY",
    )
    p.add_argument("--derivation-path", help="Ledger derivation path")
    p.add_argument("--address", help="Expected signer address (ledger); checked before the device is used")
    p.add_argument("--safe-address", help="Safe to propose to (multisig)")
    p.add_argument("--service-url", help="Safe Transaction Service URL override (multisig)")
    p.add_argument("--nonce", type=int, help="Safe nonce override (multisig)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagehand",
        description="Stagehand: multi-phase on-chain upgrade coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")

    sub = parser.add_subparsers(dest="command")

    # ── env ──────────────────────────────────────────────────────────────────
    env_p = sub.add_parser("env", help="Manage environments")
    env_sub = env_p.add_subparsers(dest="action")

    env_new = env_sub.add_parser("new", help="Create an environment")
    env_new.add_argument("name")
    env_new.add_argument("--chain-id", type=int, default=1, help="Chain id (default: 1)")
    env_new.add_argument("--strategy", default="eoa", help="Signing strategy: eoa, ledger or multisig")
    env_new.add_argument("--precedes", help="Environment this one promotes to")
    env_new.add_argument(
        "--contract",
        action="append",
        default=[],
        metavar="NAME=ADDRESS",
        help="Initial contract address (repeatable)",
    )

    env_sub.add_parser("list", help="List environments")
    env_show = env_sub.add_parser("show", help="Show an environment")
    env_show.add_argument("name")

    # ── upgrade ──────────────────────────────────────────────────────────────
    up_p = sub.add_parser("upgrade", help="Manage upgrade definitions")
    up_sub = up_p.add_subparsers(dest="action")

    up_reg = up_sub.add_parser("register", help="Register an upgrade")
    up_reg.add_argument("name")
    up_reg.add_argument("--path", default="", help="Directory holding the phase scripts")
    up_reg.add_argument("--create", help="Script for the create phase")
    up_reg.add_argument("--queue", help="Script for the queue phase")
    up_reg.add_argument("--execute", help="Script for the execute phase")
    up_reg.add_argument("--from", dest="from_semver", default="", help="Required current version range, e.g. '>=1.0,<2'")
    up_reg.add_argument("--to", default="0.0.0", help="Version after the upgrade")
    up_reg.add_argument("--timelock", type=int, default=0, help="Seconds between queue and execute")

    up_list = up_sub.add_parser("list", help="List upgrades")
    up_list.add_argument("--env", help="Only upgrades applicable to this environment")

    # ── deploy ───────────────────────────────────────────────────────────────
    dep_p = sub.add_parser("deploy", help="Drive upgrades against an environment")
    dep_sub = dep_p.add_subparsers(dest="action")

    dep_begin = dep_sub.add_parser("begin", help="Start an upgrade")
    dep_begin.add_argument("--env", required=True)
    dep_begin.add_argument("--upgrade", required=True)
    dep_begin.add_argument("--commit", default="", help="Commit the upgrade scripts were taken from")

    dep_run = dep_sub.add_parser("run", help="Advance the active upgrade")
    dep_run.add_argument("--env", required=True)
    dep_run.add_argument("--steps", type=int, default=10, help="Maximum phases to advance (default: 10)")
    dep_run.add_argument("--wait", action="store_true", help="Poll a pending signature request before advancing")
    dep_run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds --wait polls before giving up (default: STAGEHAND_MULTISIG_POLL_TIMEOUT_SECONDS, 300)",
    )
    _add_signing_args(dep_run)

    dep_status = dep_sub.add_parser("status", help="Show the active upgrade")
    dep_status.add_argument("--env", required=True)

    dep_cancel = dep_sub.add_parser("cancel", help="Abort the active upgrade")
    dep_cancel.add_argument("--env", required=True)
    dep_cancel.add_argument("--reason", default="cancelled by operator")
    _add_signing_args(dep_cancel)

    dep_hist = dep_sub.add_parser("history", help="List finished upgrades")
    dep_hist.add_argument("--env", required=True)

    # ── misc ─────────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")
    sub.add_parser("version", help="Print version")

    return parser


# ── Output ───────────────────────────────────────────────────────────────────


def _emit(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def _print_record(record: DeployRecord) -> None:
    phase = record.phase.value
    print(f"\n  {_BOLD}{record.upgrade_id}{_RESET} on {_c(record.environment, _CYAN)}")
    print(f"  {_DIM}phase:{_RESET}     {_c(phase, _PHASE_COLOR.get(phase, ''))}")
    print(f"  {_DIM}started:{_RESET}   {record.started_at.isoformat()} by {record.operator or '?'}")
    if record.signature_request_ref:
        print(f"  {_DIM}request:{_RESET}   {record.signature_request_ref}")
    if record.executable_at:
        print(f"  {_DIM}executable:{_RESET} {record.executable_at.isoformat()}")
    if record.failure_reason:
        print(f"  {_DIM}reason:{_RESET}    {_c(record.failure_reason, _RED)}")
    for name, address in sorted(record.contract_updates.items()):
        print(f"    {name:<30} {address}")
    print()


def _strategy_args(args: argparse.Namespace) -> dict[str, Any]:
    keys = ("private_key", "derivation_path", "address", "safe_address", "service_url", "nonce")
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def _parse_contracts(pairs: list[str]) -> dict[str, str]:
    contracts = {}
    for pair in pairs:
        name, sep, address = pair.partition("=")
        if not sep or not name or not address:
            raise argparse.ArgumentTypeError(f"Expected NAME=ADDRESS, got {pair!r}")
        contracts[name] = address
    return contracts


# ── env command ──────────────────────────────────────────────────────────────


def _run_env(args: argparse.Namespace, session: Session) -> int:
    from stagehand.metadata.registry import EnvironmentRegistry

    registry = EnvironmentRegistry(session.store)

    if args.action == "new":
        env = registry.create_environment(
            args.name,
            chain_id=args.chain_id,
            signing_strategy=args.strategy,
            precedes=args.precedes,
            contract_addresses=_parse_contracts(args.contract),
        )
        print(f"  Created environment {_c(env.id, _GREEN)} (chain {env.chain_id}, {env.signing_strategy})")
        return 0

    if args.action == "list":
        envs = registry.list()
        if args.json:
            _emit([dump(e) for e in envs])
            return 0
        if not envs:
            print(_c("  No environments. Create one with `stagehand env new <name>`.", _YELLOW))
        for env in envs:
            arrow = f" -> {env.precedes}" if env.precedes else ""
            print(f"  {_c(env.id, _CYAN)}{arrow}  {_DIM}chain {env.chain_id}, {env.signing_strategy}, v{env.deployed_version}{_RESET}")
        return 0

    if args.action == "show":
        _emit({**dump(registry.get(args.name)), "promotionChain": registry.promotion_chain(args.name)})
        return 0

    return 2


# ── upgrade command ──────────────────────────────────────────────────────────


def _run_upgrade(args: argparse.Namespace, session: Session) -> int:
    from stagehand.metadata.registry import EnvironmentRegistry, UpgradeRegistry

    registry = UpgradeRegistry(session.store)

    if args.action == "register":
        upgrade = registry.register(
            UpgradeDefinition(
                name=args.name,
                path=args.path,
                phases=UpgradePhases(create=args.create, queue=args.queue, execute=args.execute),
                from_semver=args.from_semver,
                to=args.to,
                timelock_seconds=args.timelock,
            )
        )
        phases = ", ".join(p.value for p in upgrade.defined_phases())
        print(f"  Registered {_c(upgrade.name, _GREEN)} ({phases})")
        return 0

    if args.action == "list":
        if args.env:
            upgrades = registry.applicable_to(EnvironmentRegistry(session.store).get(args.env))
        else:
            upgrades = registry.list()
        if args.json:
            _emit([dump(u) for u in upgrades])
            return 0
        for upgrade in upgrades:
            print(f"  {_c(upgrade.name, _CYAN)}  {_DIM}{upgrade.from_semver or '*'} -> {upgrade.to}{_RESET}")
        return 0

    return 2


# ── deploy command ───────────────────────────────────────────────────────────


def _run_deploy(args: argparse.Namespace, session: Session) -> int:
    from stagehand.deploy.state_machine import UpgradeStateMachine

    session.strategy_args = _strategy_args(args)
    machine = UpgradeStateMachine.from_session(session)

    if args.action == "begin":
        record = machine.begin(args.env, args.upgrade, commit=args.commit)
        print(f"  Started {_c(record.upgrade_id, _GREEN)} on {args.env} in phase {record.phase.value}")
        print(f"  Continue with `stagehand deploy run --env {args.env}`.")
        return 0

    if args.action == "run":
        if args.wait:
            record = machine.status(args.env)
            if record is not None and record.signature_request_ref:
                env = machine.environments.get(args.env)
                machine.strategy_factory(env, record).poll(timeout=args.timeout)
        result = machine.drive(args.env, max_steps=args.steps)
        if args.json:
            _emit({**dump(result.record), "waiting": result.waiting, "reason": result.reason})
        else:
            _print_record(result.record)
            if result.waiting:
                print(_c(f"  Waiting on {result.reason}. Re-run `stagehand deploy run` later.", _YELLOW))
        return 1 if result.record.phase.value == "failed" else 0

    if args.action == "status":
        record = machine.status(args.env)
        if record is None:
            if args.json:
                _emit(None)
            else:
                print(f"  No deploy in progress on {args.env}.")
            return 0
        if args.json:
            _emit(dump(record))
        else:
            _print_record(record)
        return 0

    if args.action == "cancel":
        record = machine.abort(args.env, reason=args.reason)
        print(f"  Cancelled {_c(record.upgrade_id, _YELLOW)} on {args.env}")
        return 0

    if args.action == "history":
        records = machine.history(args.env)
        if args.json:
            _emit([dump(r) for r in records])
            return 0
        for record in records:
            phase = record.phase.value
            print(f"  {record.started_at:%Y-%m-%d %H:%M}  {record.upgrade_id:<30} {_c(phase, _PHASE_COLOR.get(phase, ''))}")
        return 0

    return 2


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings (redacted)."""
    s = get_settings()
    print(f"\n{_BOLD}Stagehand Configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        val = getattr(s, field_name, "")
        if any(kw in field_name for kw in ("password", "secret", "key", "token")) or (
            field_name == "rpc_url" and val and "@" in str(val)
        ):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        print(f"stagehand {__version__}")
        return 0

    if not args.no_banner and not args.json:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "config":
        return _run_config()

    settings = get_settings()
    setup_logging(settings.app_env, settings.log_level)

    handlers = {"env": _run_env, "upgrade": _run_upgrade, "deploy": _run_deploy}
    if getattr(args, "action", None) is None:
        print(_c(f"Error: `stagehand {args.command}` needs a subcommand (see --help)", _RED), file=sys.stderr)
        return 2

    session = Session.from_settings(settings)
    try:
        return handlers[args.command](args, session)
    except StagehandError as exc:
        if args.json:
            _emit({"error": exc.to_dict()})
        else:
            print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return 1
    except argparse.ArgumentTypeError as exc:
        if args.json:
            _emit({"error": {"code": ErrorCode.VALIDATION_ERROR.value, "message": str(exc)}})
        else:
            print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
