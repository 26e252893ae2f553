"""Settlement Command Line Interface.

Provides operational tools for:
- Subscription expiry sweeps
- Transaction inspection
- Webhook event log inspection

Usage:
    settlement-ops expire-subscriptions [--now 2026-01-01T00:00:00Z]
    settlement-ops show-transaction <transaction-id>
    settlement-ops event-log --limit 50
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Callable, TextIO

from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.config import get_settings
from settlement_engine.database import create_session_factory, get_engine
from settlement_engine.settlement.errors import StorageError
from settlement_engine.settlement.events import EventDispatcher
from settlement_engine.settlement.reactors import register_reactors
from settlement_engine.settlement.services import (
    IdempotencyLedger,
    SettlementCoordinator,
    TransactionStore,
)

logger = logging.getLogger(__name__)


def parse_datetime(s: str) -> datetime:
    """Parse ISO datetime string; naive values are taken as UTC."""
    value = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class SettlementCli:
    """Settlement Command Line Interface."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        dispatcher: EventDispatcher | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.parser = self._build_parser()
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self.out = out or sys.stdout

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="settlement-ops",
            description="Settlement operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # expire-subscriptions command
        expire = subparsers.add_parser(
            "expire-subscriptions",
            help="Expire subscriptions whose paid-for period has ended",
        )
        expire.add_argument(
            "--now",
            type=parse_datetime,
            help="Treat this instant as now (ISO format, default: current time)",
        )

        # show-transaction command
        show = subparsers.add_parser(
            "show-transaction",
            help="Print one payment transaction",
        )
        show.add_argument("transaction_id", help="Transaction ID")

        # event-log command
        log = subparsers.add_parser(
            "event-log",
            help="List recently processed webhook events",
        )
        log.add_argument(
            "--limit",
            type=int,
            default=20,
            help="Maximum events to list (default: 20)",
        )

        return parser

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = create_session_factory(get_engine())
        return self._session_factory

    @property
    def dispatcher(self) -> EventDispatcher:
        if self._dispatcher is None:
            self._dispatcher = EventDispatcher()
            register_reactors(self._dispatcher)
        return self._dispatcher

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help(self.out)
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "expire-subscriptions": self._cmd_expire_subscriptions,
            "show-transaction": self._cmd_show_transaction,
            "event-log": self._cmd_event_log,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_expire_subscriptions(self, args: argparse.Namespace) -> int:
        """Run the expiry sweep."""
        coordinator = SettlementCoordinator(
            self.session_factory,
            self.dispatcher,
            timeout_seconds=get_settings().settlement_timeout_seconds,
        )
        try:
            expired = coordinator.expire_subscriptions(args.now)
        except StorageError as e:
            print(f"Expiry sweep failed: {e}", file=sys.stderr)
            return 1

        print(f"Expired {len(expired)} subscription(s)", file=self.out)
        for row in expired:
            print(
                f"  {row['user_id']} -> {row['artist_id']} (valid until {row['valid_until'].isoformat()})",
                file=self.out,
            )
        return 0

    def _cmd_show_transaction(self, args: argparse.Namespace) -> int:
        """Print one transaction as JSON."""
        with self.session_factory() as session:
            snapshot = TransactionStore(session).snapshot(args.transaction_id)

        if snapshot is None:
            print(f"Transaction {args.transaction_id} not found", file=sys.stderr)
            return 1

        print(json.dumps(snapshot, indent=2, default=str), file=self.out)
        return 0

    def _cmd_event_log(self, args: argparse.Namespace) -> int:
        """List recent webhook event records."""
        if args.limit < 1:
            print("--limit must be at least 1", file=sys.stderr)
            return 1

        with self.session_factory() as session:
            records = IdempotencyLedger(session).recent(args.limit)

        if not records:
            print("No webhook events recorded", file=self.out)
            return 0

        for record in records:
            print(
                f"{record.received_at.isoformat()}  {record.provider:<9} "
                f"{record.event_kind:<24} {record.provider_event_id}",
                file=self.out,
            )
        return 0


def main(args: list[str] | None = None) -> int:
    """CLI entry point."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    cli = SettlementCli()
    return cli.run(args)


if __name__ == "__main__":
    sys.exit(main())
