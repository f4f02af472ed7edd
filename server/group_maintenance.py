#!/usr/bin/env python3
"""
Device group maintenance from the command line.

Creates, deletes and lists groups, adds/removes members, and counts or
deletes the old events of every device in a group.

Usage:
    python group_maintenance.py --account ID --group ID --create
    python group_maintenance.py --account ID --group ID --add DEVICE
    python group_maintenance.py --account ID --list
    python group_maintenance.py --account ID --group ID --delete-old-events 2024-01-31 --confirm

TIME is epoch seconds, YYYY-MM-DD (end of that day, UTC) or "current".

Exit codes: 0 ok, 1 usage or missing --confirm, 98 bad time, 99 storage or
lookup error, or a delete sweep that stopped before the last device.
"""
import sys
import argparse
import time
from datetime import datetime, timezone
from typing import Optional

from device_lookup import get_account
from errors import DeviceGroupError, PartialSweepFailure, StorageUnavailableError
from event_retention import RetentionSweeper
from group_directory import create_device_group, delete_device_group, group_exists, list_groups_for_account
from group_membership import add_device_to_group, get_device_ids_for_group, remove_device_from_group
from models import SessionLocal
from observability import structured_logger

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_BAD_TIME = 98
EXIT_ERROR = 99


class TimeSpecError(ValueError):
    pass


def parse_time_arg(value: Optional[str], now: Optional[int] = None) -> int:
    """
    Parse a TIME argument into epoch seconds.

    A date means the end of that day (UTC), so the whole day is included.
    """
    now = int(time.time()) if now is None else now
    if value is None or value.strip() == "":
        raise TimeSpecError(f"Invalid time specification: {value}")
    value = value.strip()

    if value.lower() == "current":
        return now
    if value.isdigit():
        return int(value)

    for fmt in ("%Y-%m-%d", "%Y/%m/%d"):
        try:
            day = datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
        return int(day.timestamp()) + 86399

    raise TimeSpecError(f"Invalid time specification: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Device group maintenance')
    parser.add_argument('--account', help='Account ID which owns the DeviceGroup')
    parser.add_argument('--group', help='Group ID to create/delete/list')
    parser.add_argument('--create', action='store_true', help='Create a new DeviceGroup')
    parser.add_argument('--delete', action='store_true', help='Delete the DeviceGroup and its memberships')
    parser.add_argument('--add', metavar='DEVICE', help='Add a device to the group')
    parser.add_argument('--remove', metavar='DEVICE', help='Remove a device from the group')
    parser.add_argument('--list', action='store_true', help='List devices in the group (or groups in the account)')
    parser.add_argument('--count-old-events', metavar='TIME', help="Count events before TIME (requires --confirm)")
    parser.add_argument('--delete-old-events', metavar='TIME', help="Delete events before TIME (requires --confirm)")
    parser.add_argument('--confirm', action='store_true', help='Confirm --count-old-events/--delete-old-events')
    return parser


def _list(db, account_id: str, group_id: Optional[str], has_group: bool) -> int:
    print("")
    if has_group:
        print(f"DeviceGroup: {account_id}/{group_id}")
        devices = get_device_ids_for_group(db, account_id, group_id, include_inactive=True)
        if not devices:
            print("  No Devices")
        for device_id in devices:
            print(f"  Device: {device_id}")
    else:
        print(f"Account: {account_id}")
        groups = list_groups_for_account(db, account_id, include_all=True)
        if not groups:
            print("  No DeviceGroups")
        for gid in groups:
            print(f"  DeviceGroup: {gid}")
    return EXIT_OK


def _old_events(db, account, group_id: str, args, sweeper: RetentionSweeper) -> int:
    delete_events = args.delete_old_events is not None
    action = "Deleting" if delete_events else "Counting"
    arg_time = args.delete_old_events if delete_events else args.count_old_events

    try:
        cutoff = parse_time_arg(arg_time)
    except TimeSpecError as e:
        print(str(e))
        return EXIT_BAD_TIME
    if cutoff > int(time.time()):
        print(f"{action} future events not allowed")
        return EXIT_BAD_TIME

    print(f"{action} events prior to: {datetime.fromtimestamp(cutoff, timezone.utc).isoformat()}")
    if not args.confirm:
        print(f"ERROR: Missing '--confirm', aborting {'delete' if delete_events else 'count'} ...")
        return EXIT_USAGE

    if delete_events:
        try:
            result = sweeper.delete_old_events(db, account, group_id, cutoff, verbose=True)
        except PartialSweepFailure as e:
            print(f"ERROR: {e}")
            structured_logger.log_event(
                "maintenance.old_events",
                level="ERROR",
                mode="delete",
                account_id=account.account_id,
                group_id=group_id,
                cutoff=cutoff,
                result=e.total,
                aborted=True
            )
            return EXIT_ERROR
    else:
        result = sweeper.count_old_events(db, account, group_id, cutoff, verbose=True)

    structured_logger.log_event(
        "maintenance.old_events",
        mode="delete" if delete_events else "count",
        account_id=account.account_id,
        group_id=group_id,
        cutoff=cutoff,
        result=result,
        aborted=False
    )
    return EXIT_OK


def run(args, db, sweeper: Optional[RetentionSweeper] = None) -> int:
    sweeper = sweeper or RetentionSweeper()

    if not args.account:
        print("Account-ID not specified.")
        return EXIT_USAGE

    account = get_account(db, args.account)
    if account is None:
        print(f"Account-ID does not exist: {args.account}")
        return EXIT_USAGE
    account_id = account.account_id

    group_id = (args.group or "").strip().lower()
    has_group = group_id != ""
    exists = group_exists(db, account_id, group_id) if has_group else False

    opts = 0

    if args.delete:
        if not has_group:
            print("Group-ID not specified.")
            return EXIT_USAGE
        if not exists:
            print(f"DeviceGroup does not exist: {account_id}/{group_id}")
            print("Continuing with delete process ...")
        delete_device_group(db, account_id, group_id)
        print(f"DeviceGroup deleted: {account_id}/{group_id}")
        return EXIT_OK

    if args.create:
        opts += 1
        if not has_group:
            print("Group-ID not specified.")
            return EXIT_USAGE
        if exists:
            print(f"DeviceGroup already exists: {account_id}/{group_id}")
        else:
            create_device_group(db, account, group_id)
            exists = True
            print(f"Created DeviceGroup: {account_id}/{group_id}")

    if args.add is not None or args.remove is not None:
        if not has_group:
            print("Group-ID not specified.")
            return EXIT_USAGE
        if not exists:
            print(f"DeviceGroup does not exist: {account_id}/{group_id}")
            return EXIT_ERROR
        if args.add is not None:
            add_device_to_group(db, account_id, group_id, args.add)
            print(f"DeviceList entry added: {account_id}/{group_id}/{args.add}")
        else:
            remove_device_from_group(db, account_id, group_id, args.remove)
            print(f"DeviceList entry deleted: {account_id}/{group_id}/{args.remove}")
        return EXIT_OK

    if args.list:
        opts += 1
        if has_group and not exists:
            print(f"DeviceGroup does not exist: {account_id}/{group_id}")
            return EXIT_ERROR
        _list(db, account_id, group_id, has_group)

    if args.count_old_events is not None or args.delete_old_events is not None:
        if not has_group:
            print("DeviceGroup ID not specified")
            return EXIT_ERROR
        if not exists:
            print(f"DeviceGroup does not exist: {account_id}/{group_id}")
            return EXIT_ERROR
        return _old_events(db, account, group_id, args, sweeper)

    if opts == 0:
        print("Missing options ...")
        return EXIT_USAGE
    return EXIT_OK


def main(argv=None, db=None, sweeper: Optional[RetentionSweeper] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    owns_session = db is None
    if owns_session:
        db = SessionLocal()
    try:
        return run(args, db, sweeper)
    except DeviceGroupError as e:
        print(f"ERROR: {e}")
        return EXIT_ERROR
    except StorageUnavailableError as e:
        print(f"ERROR: {e}")
        structured_logger.log_event(
            "maintenance.failed",
            level="ERROR",
            account_id=args.account,
            group_id=args.group,
            error=str(e)
        )
        return EXIT_ERROR
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    sys.exit(main())
