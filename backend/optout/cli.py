import argparse
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Sequence

from optout import models
from optout.core.errors import StorageError
from optout.db.session import SessionLocal, engine
from optout.services import subscriptions


async def check_subscription(email: str, *, session_factory=SessionLocal) -> Dict[str, Any]:
    cleaned = subscriptions.normalize_email(email)
    async with session_factory() as session:
        try:
            state = (await subscriptions.get_subscription_state(session, cleaned)).value
        except StorageError:
            state = "unknown"
        subscribed = await subscriptions.is_subscribed(session, cleaned)
    return {"email": cleaned, "state": state, "is_subscribed": subscribed}


async def unsubscribe_stats(days: int, *, session_factory=SessionLocal) -> Dict[str, Any]:
    until = datetime.now(timezone.utc)
    since = until - timedelta(days=max(1, int(days)))
    async with session_factory() as session:
        counts = await subscriptions.unsubscribe_stats(session, since=since, until=until)
    return {"since": since.isoformat(), "until": until.isoformat(), "counts": counts}


async def create_tables() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Newsletter opt-out utilities")
    subparsers = parser.add_subparsers(dest="command")

    check = subparsers.add_parser("check", help="Show the opt-out state of an email address")
    check.add_argument("email", help="Email address to check")

    stats = subparsers.add_parser("stats", help="Count unsubscribes by reason")
    stats.add_argument("--days", type=int, default=30, help="Window length in days (default 30)")

    subparsers.add_parser("create-tables", help="Create database tables (local/dev only; use Alembic elsewhere)")
    return parser


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "check":
        _print_json(asyncio.run(check_subscription(args.email)))
        return True

    if args.command == "stats":
        _print_json(asyncio.run(unsubscribe_stats(args.days)))
        return True

    if args.command == "create-tables":
        asyncio.run(create_tables())
        print("Tables created")
        return True

    return False


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
