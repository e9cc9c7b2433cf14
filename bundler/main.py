#!/usr/bin/env python
"""
Logging setup and an operator CLI for read-only queries.

    bundler-cli summary <address>
    bundler-cli wallets [--set NAME]
    bundler-cli balances [--set NAME]
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from loguru import logger

from bundler.config import DEFAULT_WALLET_SET, LOG_DIR, LOG_LEVEL
from bundler.solana.integration import BundlerOrchestrator
from bundler.solana.models import lamports_to_sol


def setup_logging(level: str = LOG_LEVEL, log_dir: Optional[str] = LOG_DIR) -> None:
    """Configure structured logging with loguru."""
    logger.remove()  # Remove default handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            os.path.join(log_dir, "bundler_{time}.log"),
            rotation="1 day",
            retention="14 days",
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
            serialize=True,  # JSON formatting for structured logs
        )

    logger.add(
        sys.stderr,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )

    # Redirect httpx/solana stdlib loggers to loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru."""
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


async def run_command(args: argparse.Namespace, orchestrator: BundlerOrchestrator) -> int:
    try:
        if args.command == "summary":
            summary = await orchestrator.wallet_summary(args.address)
            native = f"{summary.native_sol:.9f}" if summary.native_sol is not None else "unknown"
            print(f"Wallet: {summary.public_key}")
            print(f"SOL Balance: {native}")
            for token in summary.tokens:
                print(f"Token {token.mint}: {token.ui_amount}")
            for warning in summary.warnings:
                print(f"Warning: {warning}")
            print(f"Query took {summary.query_duration_ms:.0f}ms")
            return 0 if not summary.warnings else 1

        if args.command == "wallets":
            report = orchestrator.list_wallets(args.set)
            for wallet in report.wallets:
                print(f"{wallet['name']}: {wallet['public_key']}")
            for error in report.errors:
                print(f"Error: {error.message}")
            return 0 if report.success else 1

        balances = await orchestrator.wallet_balances(args.set)
        for name, lamports in balances.items():
            shown = f"{lamports_to_sol(lamports):.9f} SOL" if lamports is not None else "unknown"
            print(f"{name}: {shown}")
        return 0
    finally:
        await orchestrator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect bundler wallets on Solana")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Log level")
    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="SOL and token balances of an address")
    summary.add_argument("address", type=str, help="Wallet address to check")

    for name, help_text in (("wallets", "List wallets in a set"), ("balances", "SOL balance of every wallet in a set")):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--set", type=str, default=DEFAULT_WALLET_SET, help="Wallet set identifier")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level.upper())
    return asyncio.run(run_command(args, BundlerOrchestrator()))


if __name__ == "__main__":
    sys.exit(main())
