#!/usr/bin/env python3
"""
iYield CLI

Operator tooling for building attested valuation datasets and inspecting
configuration.

Usage:
    python -m iyield <command> [subcommand] [options]

Commands:
    merkle      Dataset roots, inclusion proofs and proof verification
    config      Show, validate or describe configuration
    digest      Compute the digest an attestor signs for a submission

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from iyield import merkle
from iyield.config import ConfigError, ConfigManager
from iyield.hardening import IYieldError
from iyield.observability import configure_logging
from iyield.signatures import submission_digest

__version__ = "0.1.0"


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
        return json.dumps(data, indent=2, sort_keys=True, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _load_records(path: str) -> List[Any]:
    try:
        with open(path, encoding="utf-8") as f:
            records = json.load(f)
    except OSError as e:
        raise CLIError(f"Cannot read {path}: {e}")
    except json.JSONDecodeError as e:
        raise CLIError(f"Invalid JSON in {path}: {e}")
    if not isinstance(records, list):
        raise CLIError(f"{path} must contain a JSON array of records")
    return records


class IYieldCLI:
    """Main CLI application."""

    def __init__(self) -> None:
        self.parser = argparse.ArgumentParser(
            prog="iyield",
            description="iYield CSV pool operator tools",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"iyield {__version__}",
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

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_merkle_commands()
        self._register_config_commands()
        self._register_digest_command()

    def _register_merkle_commands(self) -> None:
        mk = self.subparsers.add_parser("merkle", help="Valuation dataset Merkle tools")
        mk_sub = mk.add_subparsers(dest="subcommand")

        root = mk_sub.add_parser("root", help="Compute a dataset root")
        src = root.add_mutually_exclusive_group(required=True)
        src.add_argument("--records", "-r", help="JSON file holding an array of records")
        src.add_argument("--leaves", "-l", nargs="+", help="Precomputed leaf hashes")

        proof = mk_sub.add_parser("proof", help="Build an inclusion proof")
        proof.add_argument("--records", "-r", required=True, help="JSON file holding an array of records")
        proof.add_argument("--index", "-i", type=int, required=True, help="Record index")

        verify = mk_sub.add_parser("verify", help="Verify an inclusion proof")
        verify.add_argument("--leaf", required=True, help="Leaf hash")
        verify.add_argument("--root", required=True, help="Expected root")
        verify.add_argument("--proof", nargs="*", default=[], help="Sibling hashes, bottom-up")

    def _register_config_commands(self) -> None:
        cfg = self.subparsers.add_parser("config", help="Configuration management")
        cfg_sub = cfg.add_subparsers(dest="subcommand")
        for name, text in (
            ("show", "Show effective configuration"),
            ("validate", "Validate configuration"),
            ("schema", "Describe configuration keys"),
        ):
            cmd = cfg_sub.add_parser(name, help=text)
            cmd.add_argument("--config", "-c", help="YAML configuration file")

    def _register_digest_command(self) -> None:
        dg = self.subparsers.add_parser("digest", help="Compute a submission digest")
        dg.add_argument("--attestor", required=True)
        dg.add_argument("--subject", required=True)
        dg.add_argument("--value", type=int, required=True)
        dg.add_argument("--merkle-root", required=True)
        dg.add_argument("--timestamp", type=int, required=True)
        dg.add_argument("--doc-ref", default="")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)
            if result is not None:
                print(format_output(result, fmt))
            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ConfigError, IYieldError, ValueError) as e:
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
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip(), exit_code=2)

        return handler(args)

    # Merkle handlers
    def _handle_merkle_root(self, args: argparse.Namespace) -> Any:
        if args.records:
            leaves = [merkle.hash_leaf(r) for r in _load_records(args.records)]
        else:
            leaves = list(args.leaves)
        return {"merkle_root": merkle.merkle_root(leaves), "leaf_count": len(leaves)}

    def _handle_merkle_proof(self, args: argparse.Namespace) -> Any:
        leaves = [merkle.hash_leaf(r) for r in _load_records(args.records)]
        proof = merkle.build_proof(leaves, args.index)
        return {
            "index": args.index,
            "leaf": leaves[args.index],
            "merkle_root": merkle.merkle_root(leaves),
            "proof": proof,
        }

    def _handle_merkle_verify(self, args: argparse.Namespace) -> Any:
        return {"valid": merkle.verify(args.proof, args.leaf, args.root)}

    # Config handlers
    def _manager(self, args: argparse.Namespace) -> ConfigManager:
        mgr = ConfigManager()
        if args.config:
            mgr.load_from_file(Path(args.config))
        else:
            mgr.load_defaults()
        return mgr

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self._manager(args).config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self._manager(args).validate()
        if errors:
            raise CLIError("; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return self._manager(args).export_schema()

    # Digest handler
    def _handle_digest(self, args: argparse.Namespace) -> Any:
        digest = submission_digest(
            args.attestor, args.subject, args.value, args.merkle_root, args.timestamp, args.doc_ref
        )
        return {"digest": digest}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    observability = ConfigManager().config.observability
    configure_logging(level=observability.log_level.get(), fmt=observability.log_format.get())
    cli = IYieldCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
