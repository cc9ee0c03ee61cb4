#!/usr/bin/env python3
"""Quick pending-notification query tool for testing/debugging.

Usage:
    python3 scripts/query_notifications.py              # Show today's pending notifications
    python3 scripts/query_notifications.py all          # Show ALL pending notifications
    python3 scripts/query_notifications.py med <id>     # Show one medication's notifications
    python3 scripts/query_notifications.py id <nid>     # Show one notification's payload
    python3 scripts/query_notifications.py fire         # Deliver everything that is due now
"""
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dateutil import tz

from medreminder.config import load_config
from medreminder.logger import configure_logging
from medreminder.models import notification_prefix, snooze_prefix
from medreminder.notification_center import SQLiteNotificationCenter


def fmt(pending):
    if not pending:
        print("  (none)")
        return
    for p in pending:
        local = p.trigger_at.astimezone(tz.tzlocal()).strftime("%Y-%m-%d %H:%M")
        name = p.payload.get("medicationName") or p.payload.get("title", "")
        dosage = p.payload.get("dosage", "")
        print(f"  {local} | {name} {dosage} | {p.id}")


def main():
    config = load_config()
    configure_logging(config)
    config.set("notifications.present_with_notify_send", False)
    center = SQLiteNotificationCenter(config)
    pending = center.list_pending()

    arg = sys.argv[1] if len(sys.argv) > 1 else "today"

    if arg == "today":
        today = datetime.now(tz.tzlocal()).date()
        print(f"=== Pending notifications for {today} ===")
        fmt([p for p in pending if p.trigger_at.astimezone(tz.tzlocal()).date() == today])
    elif arg == "all":
        print(f"=== All pending notifications ({len(pending)}) ===")
        fmt(pending)
    elif arg == "med" and len(sys.argv) > 2:
        prefixes = (notification_prefix(sys.argv[2]), snooze_prefix(sys.argv[2]))
        print(f"=== Pending for medication {sys.argv[2]} ===")
        fmt([p for p in pending if p.id.startswith(prefixes)])
    elif arg == "id" and len(sys.argv) > 2:
        match = [p for p in pending if p.id == sys.argv[2]]
        if match:
            print(f"  {'trigger_at':20s}: {match[0].trigger_at.isoformat()}")
            for k, v in match[0].payload.items():
                print(f"  {k:20s}: {v}")
        else:
            print(f"  Notification {sys.argv[2]} not pending")
    elif arg == "fire":
        fired = center.fire_due()
        print(f"=== Delivered {len(fired)} due notification(s) ===")
        fmt(fired)
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
