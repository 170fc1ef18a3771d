#!/usr/bin/env python3
"""
CHECKBOOK CLI

Command-line interface for blank-check redemption authorization.

Usage:
    checkbook <command> [subcommand] [options]

Commands:
    config      Configuration management
    account     Virtual account derivation
    digest      Message digests signers and bearers sign
    redeem      Verify or execute a redemption against a ledger snapshot
    status      Who redeemed a check, if anyone

Exit codes:
    0   success
    1   usage, validation or I/O error
    2   redemption rejected

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, List, Optional

import yaml

from checkbook import __version__
from checkbook.hardening import RedemptionRejected


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


EXIT_REJECTED = 2


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return _format_text(data)


def _format_text(data: Any) -> str:
    if isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _load_document(path: str) -> Any:
    from checkbook.core import load_json, load_yaml
    try:
        return load_yaml(path) if path.endswith((".yaml", ".yml")) else load_json(path)
    except FileNotFoundError as exc:
        raise CLIError(f"File not found: {path}") from exc
    except (ValueError, yaml.YAMLError) as exc:
        raise CLIError(f"Cannot parse {path}: {exc}") from exc


class CheckbookCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="checkbook",
            description="Blank-check redemption authorization",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"checkbook {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file (YAML)",
        )
        self.parser.add_argument(
            "--log-level",
            choices=["debug", "info", "warning", "error", "critical"],
            help="Override observability.log_level",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_config_commands()
        self._register_account_commands()
        self._register_digest_commands()
        self._register_redeem_commands()
        self._register_status_command()

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_account_commands(self) -> None:
        account = self.subparsers.add_parser("account", help="Virtual account derivation")
        account_sub = account.add_subparsers(dest="subcommand")

        derive = account_sub.add_parser("derive", help="Derive the account a signer set draws on")
        derive.add_argument("--signer", "-s", action="append", required=True,
                            help="Signer identity; repeat in declared order, primaries first")
        derive.add_argument("--threshold", "-t", required=True,
                            help="required_primary,total_primary,required_card,total_card")
        derive.add_argument("--asset", "-a", required=True, help="Asset contract identity")
        derive.add_argument("--custodian", help="Custodian identity (default: engine.custodian_id)")

    def _register_digest_commands(self) -> None:
        digest = self.subparsers.add_parser("digest", help="Message digests")
        digest_sub = digest.add_subparsers(dest="subcommand")

        blank = digest_sub.add_parser("blank-check", help="Digest primary signers authorize")
        blank.add_argument("--asset", "-a", required=True, help="Asset contract identity")
        blank.add_argument("--face-value", "-v", required=True, help="Amount or asset identifier")
        blank.add_argument("--unique", action="store_true",
                           help="Treat the face value as a unique asset identifier")
        blank.add_argument("--bearer", "-b", required=True, help="Bearer secret identity")

        recipient = digest_sub.add_parser("recipient", help="Digest the bearer secret signs")
        recipient.add_argument("--recipient", "-r", required=True, help="Recipient identity")

    def _register_redeem_commands(self) -> None:
        redeem = self.subparsers.add_parser("redeem", help="Redemption operations")
        redeem_sub = redeem.add_subparsers(dest="subcommand")

        verify = redeem_sub.add_parser("verify", help="Run every check without claiming anything")
        verify.add_argument("--request", "-r", required=True, help="Redemption request (JSON/YAML)")
        verify.add_argument("--ledger", "-l", help="Ledger snapshot (YAML/JSON)")

        execute = redeem_sub.add_parser("execute", help="Redeem and write the ledger back")
        execute.add_argument("--request", "-r", required=True, help="Redemption request (JSON/YAML)")
        execute.add_argument("--ledger", "-l", required=True, help="Ledger snapshot (YAML/JSON)")
        execute.add_argument("--dry-run", action="store_true", help="Do not write the ledger back")

    def _register_status_command(self) -> None:
        status = self.subparsers.add_parser("status", help="Who redeemed a check")
        status.add_argument("--ledger", "-l", required=True, help="Ledger snapshot (YAML/JSON)")
        status.add_argument("--account", "-a", required=True, help="Virtual account identity")
        status.add_argument("--bearer", "-b", required=True, help="Bearer secret identity")

    def _setup(self, args: argparse.Namespace) -> None:
        from checkbook.config import get_config_manager
        from checkbook.observability import configure_logging

        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()

        configure_logging(
            level=args.log_level or mgr.get("observability.log_level"),
            fmt=mgr.get("observability.log_format"),
        )

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._setup(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except RedemptionRejected as e:
            if not parsed.quiet:
                print(f"Rejected ({e.reason.value}): {e.message}", file=sys.stderr)
            return EXIT_REJECTED

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd.replace('-', '_')}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from checkbook.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from checkbook.config import get_config_manager
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("Invalid configuration: " + "; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from checkbook.config import get_config_manager
        return get_config_manager().export_schema()

    # Account handlers
    def _handle_account_derive(self, args: argparse.Namespace) -> Any:
        from checkbook.config import get_config_manager
        from checkbook.derivation import derive_account
        from checkbook.threshold import SignerSet, ThresholdConfig

        threshold = ThresholdConfig.from_sequence(args.threshold)
        signer_set = SignerSet.from_list(args.signer, threshold)
        custodian = args.custodian or get_config_manager().get("engine.custodian_id")
        return {
            "account": derive_account(signer_set, threshold, args.asset, custodian),
            "threshold": threshold.to_list(),
            "custodian_id": custodian.lower(),
        }

    # Digest handlers
    def _handle_digest_blank_check(self, args: argparse.Namespace) -> Any:
        from checkbook.signatures import blank_check_digest

        face_value: Any = args.face_value
        if not args.unique:
            if not face_value.isdigit():
                raise CLIError(f"Face value must be an integer amount, got {face_value!r} (use --unique)")
            face_value = int(face_value)
        return {
            "digest": blank_check_digest(args.asset, face_value, args.bearer).hex(),
            "face_value": face_value,
        }

    def _handle_digest_recipient(self, args: argparse.Namespace) -> Any:
        from checkbook.signatures import recipient_digest
        return {"digest": recipient_digest(args.recipient).hex()}

    # Redeem handlers
    def _load_request(self, path: str) -> Any:
        from checkbook.engine import RedemptionRequest
        return RedemptionRequest.from_dict(_load_document(path))

    def _load_sandbox(self, path: str) -> Any:
        from checkbook.snapshot import load_snapshot
        try:
            return load_snapshot(path)
        except FileNotFoundError as exc:
            raise CLIError(f"File not found: {path}") from exc

    def _handle_redeem_verify(self, args: argparse.Namespace) -> Any:
        request = self._load_request(args.request)
        if args.ledger:
            engine = self._load_sandbox(args.ledger).engine
        else:
            from checkbook.custodian import CustodianRegistry
            from checkbook.engine import RedemptionEngine
            engine = RedemptionEngine(CustodianRegistry())

        account = engine.preflight(request)
        return {"valid": True, "account": account, "custodian_id": engine.custodian_id}

    def _handle_redeem_execute(self, args: argparse.Namespace) -> Any:
        from checkbook.snapshot import dump_snapshot

        request = self._load_request(args.request)
        sandbox = self._load_sandbox(args.ledger)
        receipt = sandbox.engine.redeem(request)
        if not args.dry_run:
            dump_snapshot(sandbox, args.ledger)
        return receipt.to_dict()

    # Status handler
    def _handle_status(self, args: argparse.Namespace) -> Any:
        sandbox = self._load_sandbox(args.ledger)
        redeemer = sandbox.engine.check_status(args.account, args.bearer)
        return {
            "account": args.account.lower(),
            "bearer_secret_identity": args.bearer.lower(),
            "redeemed": redeemer is not None,
            "redeemer": redeemer,
        }


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = CheckbookCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
