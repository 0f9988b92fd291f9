#!/usr/bin/env python3
"""
sharecal - command-line front end for a shared calendar.

This is the main entry point for the application.
"""

import sys
import asyncio
import argparse
from datetime import date, timedelta
from pathlib import Path

from sharecal.config import Config
from sharecal.debug import set_debug
from sharecal.errors import CalendarError
from sharecal.event_store import CalendarStore
from sharecal.ics_subscription import ICSSubscription
from sharecal.timezone_utils import parse_date


EXAMPLE_CONFIG = """
[General]
user_id = "00000000-0000-0000-0000-000000000000"
password_program = "/usr/bin/pass"

[Store]
backend = "postgrest"
url = "https://your-project.supabase.co"
api_key_key = "supabase/anon-key"

[Subscription.Holidays]
url = "https://example.com/holidays.ics"
name = "Holidays"
color = "#34a853"
"""


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="sharecal - shared calendar with pending/accept/decline sharing"
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to configuration file (default: auto-detect)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    agenda = sub.add_parser("agenda", help="List occurrences per day")
    agenda.add_argument("--from", dest="first", type=parse_date, default=None,
                        help="First day, YYYY-MM-DD (default: today)")
    agenda.add_argument("--days", type=int, default=7, help="Number of days (default: 7)")

    sub.add_parser("pending", help="List shares waiting for your answer")

    share = sub.add_parser("share", help="Share one of your events")
    share.add_argument("event_id")
    share.add_argument("friends", nargs="+", help="Recipient user ids")
    share.add_argument("-m", "--message", default=None)

    for name, help_text in (("accept", "Accept a received share"),
                            ("decline", "Decline a received share"),
                            ("cancel", "Cancel a pending share you sent")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("shared_id")

    delete = sub.add_parser("delete", help="Delete an event or remove an accepted shared event")
    delete.add_argument("event_id", help="Event id or occurrence id")

    sub.add_parser("import-ics", help="Import the configured ICS subscriptions")
    return parser.parse_args(argv)


def print_agenda(store: CalendarStore, first: date, days: int) -> None:
    agenda = store.agenda(first, first + timedelta(days=days - 1))
    if not agenda:
        print("No events")
        return
    for day_key, occurrences in agenda.items():
        print(day_key)
        for occ in occurrences:
            when = "All day" if occ.is_all_day else f"{occ.start:%H:%M}-{occ.end:%H:%M}"
            label = f"  [{occ.sharing.label}]" if occ.sharing else ""
            print(f"  {when:<12} {occ.title}{label}  ({occ.occurrence_id})")


async def run(config: Config, args) -> int:
    store = CalendarStore.from_config(config)
    try:
        if not await store.refresh():
            print(f"Error loading calendar: {store.last_error}", file=sys.stderr)
            return 1

        if args.command == "agenda":
            print_agenda(store, args.first or date.today(), args.days)

        elif args.command == "pending":
            pending = await store.pending_actions()
            if not pending:
                print("Nothing pending")
            for item in pending:
                note = f' - "{item.message}"' if item.message else ""
                print(f"{item.shared.id}  {item.title}  from {item.sender_name}{note}")

        elif args.command == "share":
            shares = await store.share_event(args.event_id, args.friends, args.message)
            print(f"Shared with {len(shares)} friend(s)")

        elif args.command == "accept":
            fork = await store.accept_share(args.shared_id)
            print(f"Accepted as {fork.id}")

        elif args.command == "decline":
            await store.decline_share(args.shared_id)
            print("Declined")

        elif args.command == "cancel":
            await store.cancel_share(args.shared_id)
            print("Cancelled")

        elif args.command == "delete":
            found = await store.delete_event(args.event_id)
            print("Deleted" if found else "Already gone")

        elif args.command == "import-ics":
            status = 0
            for sub_config in config.ics_subscriptions:
                subscription = ICSSubscription(sub_config.name, sub_config.url, sub_config.color)
                count = await store.import_subscription(subscription)
                if count is None:
                    print(f"{sub_config.name}: {subscription.error}", file=sys.stderr)
                    status = 1
                else:
                    print(f"{sub_config.name}: {count} event(s)")
            return status
        return 0
    finally:
        await store.stop()


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    set_debug(args.debug)

    # Load configuration
    try:
        config = Config.load(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("\nPlease create a configuration file at:")
        print(f"  - {Config.get_default_config_path()}")
        print("\nExample configuration:")
        print(EXAMPLE_CONFIG)
        sys.exit(1)
    except (ValueError, OSError) as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)

    try:
        status = asyncio.run(run(config, args))
    except (CalendarError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        status = 1
    sys.exit(status)


if __name__ == "__main__":
    main()
