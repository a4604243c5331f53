#!/usr/bin/env python3
"""
trustlink CLI — Operate the identity and trust engine against a local store.

Commands:
    score          - Show an account's trust score (or score a signals file)
    verify-miniapp - Verify a messaging mini-app payload
    verify-wallet  - Verify a wallet signature proof
    resolve        - Resolve a provider identity to an account
    merge          - Merge a placeholder account into another account
    resume-merges  - Re-run merges recorded as pending
    recompute      - Recompute and store an account's trust score
"""

import argparse
import json
import sys
from typing import Optional

from trustlink.config import Settings
from trustlink.errors import TrustLinkError
from trustlink.log import setup_structured_logging


def _output(data: dict, args: argparse.Namespace, human_fn=None):
    """Print JSON under --json (or when a command has no human view)."""
    if human_fn is None or getattr(args, 'json', False):
        json.dump(data, sys.stdout, indent=2, default=str, ensure_ascii=False)
        sys.stdout.write("\n")
    else:
        human_fn(data)


def _fail(args: argparse.Namespace, error: dict, text: str):
    """Report a failed command on stdout (--json) or stderr, then exit 1."""
    if getattr(args, 'json', False):
        json.dump(error, sys.stdout, indent=2, default=str, ensure_ascii=False)
        sys.stdout.write("\n")
    else:
        print(f"❌ {text}", file=sys.stderr)
    sys.exit(1)


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(args, 'db', None):
        settings.db_path = args.db
    if getattr(args, 'bot_token', None):
        settings.bot_token = args.bot_token
    return settings


def _flows(args: argparse.Namespace):
    from trustlink.flows import IdentityFlows
    return IdentityFlows(_settings(args))


def _read_json(path: str) -> dict:
    if path == '-':
        return json.load(sys.stdin)
    with open(path) as f:
        return json.load(f)


def _print_score(d: dict):
    print(f"📊 Trust score: {d['composite']}/100 (level {d['trust_level']})")
    for name, value in d['categories'].items():
        print(f"   {name:<11} {value}")


# ─── Commands ──────────────────────────────────────────────────────

def cmd_score(args):
    """Show the stored score of an account, or score a raw signals file."""
    if args.signals:
        from trustlink.scoring import score
        result = score(_read_json(args.signals), _settings(args).score_caps).to_dict()
    else:
        if not args.account_id:
            raise ValueError("give an account id or --signals FILE")
        flows = _flows(args)
        try:
            result = {"account_id": args.account_id,
                      **flows.get_score(args.account_id).to_dict()}
        finally:
            flows.store.close()

    _output(result, args, _print_score)
    return result


def cmd_verify_miniapp(args):
    """Verify a mini-app init data string."""
    from trustlink.providers.messaging import MiniAppVerifier

    verifier = MiniAppVerifier.from_settings(_settings(args))
    identity = verifier.verify(args.init_data)
    result = identity.to_dict()

    def human(d):
        print(f"✅ VALID messaging identity {d['provider_id']}")
        print(f"   Name:   {d['claims'].get('display_name')}")
        print(f"   Handle: {d['claims'].get('handle') or '-'}")

    _output(result, args, human)
    return result


def cmd_verify_wallet(args):
    """Verify a wallet proof from a JSON file or stdin."""
    from trustlink.providers.wallet import WalletVerifier

    identity = WalletVerifier.from_settings(_settings(args)).verify(_read_json(args.file))
    result = identity.to_dict()

    def human(d):
        print(f"✅ VALID wallet signature for {d['provider_id']}")

    _output(result, args, human)
    return result


def cmd_resolve(args):
    """Resolve (kind, provider id) to an account, creating it if needed."""
    from trustlink.models import ProviderKind, VerifiedIdentity

    identity = VerifiedIdentity(ProviderKind(args.kind), args.provider_id)
    flows = _flows(args)
    try:
        account_id, is_new = flows.resolver.resolve(identity)
        result = {
            "account_id": account_id,
            "is_new_account": is_new,
            "placeholder": flows.resolver.is_placeholder(account_id),
        }
    finally:
        flows.store.close()

    def human(d):
        state = "created" if d['is_new_account'] else "existing"
        print(f"🔗 {args.kind}:{args.provider_id} → {d['account_id']} ({state})")

    _output(result, args, human)
    return result


def cmd_merge(args):
    """Merge SOURCE into TARGET."""
    flows = _flows(args)
    try:
        result = flows.merger.merge(args.source, args.target).to_dict()
    finally:
        flows.store.close()

    def human(d):
        print(f"✅ Merged {d['source']} → {d['target']}")
        for step in d['steps']:
            if step['moved'] or step['dropped'] or step['merged']:
                print(f"   {step['step']}: moved {step['moved']}, "
                      f"dropped {step['dropped']}, merged {step['merged']}")
        if d['score']:
            print(f"   Target score: {d['score']['composite']}")

    _output(result, args, human)
    return result


def cmd_resume_merges(args):
    """Re-run pending merges."""
    flows = _flows(args)
    try:
        reports = flows.merger.resume_pending()
        remaining = len(flows.merger.pending())
    finally:
        flows.store.close()
    result = {
        "completed": [r.to_dict() for r in reports],
        "remaining": remaining,
    }

    def human(d):
        print(f"🔁 Resumed {len(d['completed'])} merge(s), {d['remaining']} still pending")
        for r in d['completed']:
            print(f"   {r['source']} → {r['target']}")

    _output(result, args, human)
    return result


def cmd_recompute(args):
    """Recompute and persist an account's score."""
    flows = _flows(args)
    try:
        result = {"account_id": args.account_id,
                  **flows.engine.recompute(args.account_id).to_dict()}
    finally:
        flows.store.close()

    _output(result, args, _print_score)
    return result


# ─── Parser ────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trustlink",
        description="trustlink — identity linking and trust score CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    parser.add_argument("--db", help="SQLite database path (default: $TRUSTLINK_DB)")
    parser.add_argument("--log-level", default=None, help="Log level (default: $TRUSTLINK_LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # score
    p = sub.add_parser("score", help="Show trust score")
    p.add_argument("account_id", nargs="?", help="Account ID")
    p.add_argument("-s", "--signals", help="Score a raw signals JSON file instead (- for stdin)")

    # verify-miniapp
    p = sub.add_parser("verify-miniapp", help="Verify a mini-app payload")
    p.add_argument("init_data", help="URL-encoded init data")
    p.add_argument("--bot-token", help="Bot token (default: $TRUSTLINK_BOT_TOKEN)")

    # verify-wallet
    p = sub.add_parser("verify-wallet", help="Verify a wallet proof")
    p.add_argument("file", help="Proof JSON file (- for stdin)")

    # resolve
    p = sub.add_parser("resolve", help="Resolve an identity to an account")
    p.add_argument("kind", choices=["messaging", "wallet", "social"], help="Provider kind")
    p.add_argument("provider_id", help="Provider-side id")

    # merge
    p = sub.add_parser("merge", help="Merge a placeholder account into another")
    p.add_argument("source", help="Account to merge away")
    p.add_argument("target", help="Account that receives everything")

    # resume-merges
    sub.add_parser("resume-merges", help="Re-run merges recorded as pending")

    # recompute
    p = sub.add_parser("recompute", help="Recompute an account's stored score")
    p.add_argument("account_id", help="Account ID")

    return parser


def main(argv: Optional[list[str]] = None) -> Optional[dict]:
    """CLI entry point. Returns result dict for testing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_structured_logging(args.log_level or Settings.from_env().log_level)

    commands = {
        "score": cmd_score,
        "verify-miniapp": cmd_verify_miniapp,
        "verify-wallet": cmd_verify_wallet,
        "resolve": cmd_resolve,
        "merge": cmd_merge,
        "resume-merges": cmd_resume_merges,
        "recompute": cmd_recompute,
    }

    try:
        return commands[args.command](args)
    except FileNotFoundError as e:
        _fail(args, {"error": "FileNotFound", "message": str(e)}, f"File not found: {e}")
    except TrustLinkError as e:
        _fail(args, e.to_dict(), f"{type(e).__name__}: {e}")
    except ValueError as e:
        _fail(args, {"error": "ValueError", "message": str(e)}, f"Error: {e}")


if __name__ == "__main__":
    main()
