#!/usr/bin/env python3
"""
Quorum Gateway - Operator Command Line Interface

Usage:
    quorum keygen --id <validator> --out <dir>       Create <id>.pub (PEM) and <id>.key (seed hex)
    quorum sign --key <file> --proposal <id> --action <kind> --payload <json>
                                                      Print the base64 vote signature
    quorum audit-verify --db <path>                  Verify the SQLite audit log hash chain
    quorum serve [--host H] [--port P]               Run the gateway API
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from quorum_gateway.audit_log import SqliteAuditLog
from quorum_gateway.crypto import Ed25519KeyPair, decode_json_object
from quorum_gateway.errors import GovError
from quorum_gateway.proposals import ActionKind
from quorum_gateway.signatures import encode_signature, proposal_message

logger = logging.getLogger("quorum_gateway.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def cmd_keygen(args) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    pub_path = out_dir / f"{args.id}.pub"
    key_path = out_dir / f"{args.id}.key"
    if key_path.exists() and not args.force:
        print(f"ERROR: {key_path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    kp = Ed25519KeyPair.generate(args.id)
    pub_path.write_text(kp.public_key_pem(), encoding="utf-8")
    # Private seed is readable by the owner only.
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(kp.private_key_bytes.hex() + "\n")

    print(f"Public key:  {pub_path}")
    print(f"Private key: {key_path}  (keep offline; never give it to the gateway)")
    print(f"Public hex:  {kp.public_key_hex}")
    return 0


def cmd_sign(args) -> int:
    try:
        seed = bytes.fromhex(Path(args.key).read_text(encoding="utf-8").strip())
        kp = Ed25519KeyPair.from_seed(seed, Path(args.key).stem)
    except (OSError, ValueError) as e:
        print(f"ERROR: cannot load signing key {args.key}: {e}", file=sys.stderr)
        return 1
    try:
        action = ActionKind.parse(args.action)
        payload = decode_json_object(args.payload, what="--payload")
        message = proposal_message(args.proposal, action.value, payload)
    except GovError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    print(encode_signature(kp.sign(message)))
    return 0


def cmd_audit_verify(args) -> int:
    if not Path(args.db).exists():
        print(f"ERROR: audit database not found: {args.db}", file=sys.stderr)
        return 1
    ok, reason, count = SqliteAuditLog(args.db).verify_chain()
    print(f"Verifying audit chain in {args.db}...")
    print(f"Entries checked: {count}")
    if ok:
        print("Audit log integrity verified")
        return 0
    print(f"Audit log integrity check FAILED: {reason} (at entry {count})")
    return 2


def cmd_serve(args) -> int:
    import uvicorn

    from quorum_gateway.server import create_app

    app = create_app()
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        timeout_graceful_shutdown=int(app.state.services.config.shutdown_grace_seconds) + 1,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Quorum Gateway operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a validator key pair")
    keygen_parser.add_argument("--id", required=True, help="Validator id (used as the file name)")
    keygen_parser.add_argument("--out", required=True, help="Output directory")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing key")
    keygen_parser.set_defaults(func=cmd_keygen)

    sign_parser = subparsers.add_parser("sign", help="Sign a vote for a proposal")
    sign_parser.add_argument("--key", required=True, help="Path to the validator .key file")
    sign_parser.add_argument("--proposal", required=True, help="Proposal id")
    sign_parser.add_argument("--action", required=True, help="Proposal action (e.g. REVOKE_CREDENTIAL)")
    sign_parser.add_argument("--payload", required=True, help="Proposal payload as a JSON object")
    sign_parser.set_defaults(func=cmd_sign)

    verify_parser = subparsers.add_parser("audit-verify", help="Verify the audit log hash chain")
    verify_parser.add_argument("--db", default="quorum_audit.db", help="Path to the audit database")
    verify_parser.set_defaults(func=cmd_audit_verify)

    serve_parser = subparsers.add_parser("serve", help="Run the gateway API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
