#!/usr/bin/env python3
"""
Custody CLI

Command-line tool for vault operators and the off-chain withdrawal
authorizer.

Usage:
    custody <command> [subcommand] [options]

Commands:
    keygen      Generate an authorizer Ed25519 key (OKP JWK)
    address     Show the account of a key file
    digest      Compute the withdrawal digest for a signing context
    sign        Sign a withdrawal authorization request
    fee         Preview the fee split of a deposit
    config      Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import jsonschema
import yaml

from custody import __version__
from custody.config import ConfigError, VaultSettings, get_config_manager
from custody.fees import FeeSchedule
from custody.hardening import ValidationError, ValidationErrors, VaultError
from custody.observability import VaultLayer, configure_logging_from_config, get_logger, timed_operation
from custody.signing import (
    SigningContext,
    WithdrawalAuthorization,
    WithdrawalSigner,
    load_signer,
    withdrawal_digest,
)

logger = get_logger("cli", VaultLayer.CLI)


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


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.dump(data, default_flow_style=False, sort_keys=True)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _read_json(path: str) -> Dict[str, Any]:
    try:
        data = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise CLIError(f"File not found: {path}")
    except json.JSONDecodeError as ex:
        raise CLIError(f"{path}: invalid JSON: {ex}")
    if not isinstance(data, dict):
        raise CLIError(f"{path}: expected a JSON object")
    return data


class CustodyCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="custody",
            description="Custody vault operator and authorizer CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"custody {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file (default: custody.yaml, config/custody.yaml, ~/.custody/config.yaml)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        keygen = self.subparsers.add_parser("keygen", help="Generate an authorizer key")
        keygen.add_argument("--out", "-o", required=True, help="Path of the JWK file to write")
        keygen.add_argument("--kid", default="key-1", help="Key id stored in the JWK")
        keygen.add_argument("--force", action="store_true", help="Overwrite an existing file")

        address = self.subparsers.add_parser("address", help="Show the account of a key file")
        address.add_argument("--key", "-k", required=True, help="JWK key file")

        digest = self.subparsers.add_parser("digest", help="Compute a withdrawal digest")
        self._add_context_arguments(digest)
        self._add_authorization_arguments(digest)

        sign = self.subparsers.add_parser("sign", help="Sign a withdrawal authorization")
        sign.add_argument("--key", "-k", required=True, help="JWK key file of the authorizer")
        sign.add_argument(
            "--request", "-r",
            help='JSON file {"context": {...}, "authorization": {...}}; overrides field options',
        )
        self._add_context_arguments(sign)
        self._add_authorization_arguments(sign, required=False)

        fee = self.subparsers.add_parser("fee", help="Preview a deposit fee split")
        fee.add_argument("--amount", "-a", type=int, required=True, help="Deposit amount in base units")
        fee.add_argument("--bps", type=int, help="Fee rate in basis points (default: configured rate)")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        config_sub.add_parser("show", help="Show current configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    @staticmethod
    def _add_context_arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--contract", help="Vault address (verifying contract)")
        parser.add_argument("--name", help="Signing-domain name (default: configured)")
        parser.add_argument("--domain-version", help="Signing-domain version (default: configured)")
        parser.add_argument("--chain-id", type=int, help="Environment id (default: configured)")

    @staticmethod
    def _add_authorization_arguments(parser: argparse.ArgumentParser, required: bool = True) -> None:
        parser.add_argument("--requester", required=required, help="Withdrawing account")
        parser.add_argument("--amount", type=int, required=required, help="Amount in base units")
        parser.add_argument("--deadline", type=int, required=required, help="Unix deadline (seconds)")
        parser.add_argument("--nonce", type=int, required=required, help="Vault nonce to bind")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            else:
                get_config_manager().load_defaults()
            configure_logging_from_config()

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ConfigError, VaultError, ValidationError, ValidationErrors,
                jsonschema.ValidationError, OSError, ValueError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Context helpers
    def _context_from_args(self, args: argparse.Namespace) -> SigningContext:
        if not args.contract:
            raise CLIError("--contract is required (vault address)")
        settings = VaultSettings.from_config()
        return SigningContext(
            name=args.name or settings.name,
            version=args.domain_version or settings.version,
            chain_id=args.chain_id if args.chain_id is not None else settings.chain_id,
            verifying_contract=args.contract,
        )

    @staticmethod
    def _authorization_from_args(args: argparse.Namespace) -> WithdrawalAuthorization:
        missing = [n for n in ("requester", "amount", "deadline", "nonce") if getattr(args, n) is None]
        if missing:
            raise CLIError("missing authorization fields: " + ", ".join(f"--{m}" for m in missing))
        return WithdrawalAuthorization(args.requester, args.amount, args.deadline, args.nonce)

    # Key handlers
    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        path = pathlib.Path(args.out)
        if path.exists() and not args.force:
            raise CLIError(f"Refusing to overwrite {path} (use --force)")
        signer = WithdrawalSigner.generate()
        path.write_text(json.dumps(signer.to_jwk(args.kid), indent=2) + "\n", encoding="utf-8")
        logger.info("authorizer key generated", account=signer.account, path=str(path))
        return {"account": signer.account, "path": str(path), "kid": args.kid}

    def _handle_address(self, args: argparse.Namespace) -> Any:
        signer = load_signer(args.key)
        return {"account": signer.account, "public_key": signer.public_key.hex()}

    # Authorization handlers
    def _handle_digest(self, args: argparse.Namespace) -> Any:
        context = self._context_from_args(args)
        authorization = self._authorization_from_args(args)
        return {
            "digest": "0x" + withdrawal_digest(context, authorization).hex(),
            "context": context.to_dict(),
            "authorization": authorization.to_dict(),
        }

    @timed_operation(logger, "sign")
    def _handle_sign(self, args: argparse.Namespace) -> Any:
        signer = load_signer(args.key)
        if args.request:
            request = _read_json(args.request)
            if "context" not in request or "authorization" not in request:
                raise CLIError("request must contain 'context' and 'authorization'")
            context = SigningContext.from_dict(request["context"])
            authorization = WithdrawalAuthorization.from_dict(request["authorization"])
        else:
            context = self._context_from_args(args)
            authorization = self._authorization_from_args(args)

        signature = signer.sign(context, authorization)
        logger.info(
            "withdrawal authorization issued",
            signer=signer.account,
            requester=authorization.requester,
            amount=authorization.amount,
            nonce=authorization.nonce,
        )
        return {
            "signer": signer.account,
            "digest": "0x" + withdrawal_digest(context, authorization).hex(),
            "signature": "0x" + signature.hex(),
            "authorization": authorization.to_dict(),
        }

    def _handle_fee(self, args: argparse.Namespace) -> Any:
        if args.bps is None:
            settings = VaultSettings.from_config()
            schedule = FeeSchedule(settings.fee_rate_bps, settings.treasury)
        else:
            # Preview only: a placeholder treasury satisfies the schedule's constructor.
            schedule = FeeSchedule(args.bps, "0x" + "00" * 20 if args.bps else None)
        split = schedule.split(args.amount)
        return dict(split.to_dict(), fee_rate_bps=schedule.fee_rate_bps)

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main() -> int:
    """CLI entry point."""
    cli = CustodyCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
