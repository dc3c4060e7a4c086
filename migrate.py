"""
Legacy database -> check-in store migration.

Usage:
    python migrate.py --legacy legacy.db --target events.db

What this script does:
    1. Exports every event and attendee from the legacy relational database
    2. Transforms them to the current schema (timestamps -> epoch milliseconds,
       new event ids, attendee event references remapped)
    3. Inserts events one at a time, then attendees in small concurrent batches
    4. Re-reads the target and checks counts and a sample event

Run it once, against an empty target, during a maintenance window. It does not
resume: a failed run must be cleaned up by hand before running again. The
legacy data is left untouched and is the rollback path.
"""

import argparse
import logging
import os
import sqlite3
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Optional

from dotenv import load_dotenv

from database import Database
from errors import MigrationError
from models import Attendee, Event
from utils import from_millis, new_id, to_millis

logger = logging.getLogger(__name__)

BATCH_SIZE = 10


@dataclass
class LegacyEvent:
    id: str
    name: str
    date: datetime
    capacity: int
    created_at: datetime


@dataclass
class LegacyAttendee:
    id: str
    name: str
    email: str
    event_id: str
    qr_code: str
    checked_in: bool
    checked_in_at: Optional[datetime]
    created_at: datetime


@dataclass
class MigrationReport:
    events: int
    attendees: int
    dry_run: bool = False


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class LegacyStore:
    """Read-only view over the legacy relational database."""

    def __init__(self, db_name: str):
        if not os.path.exists(db_name):
            raise MigrationError("export", f"Legacy database {db_name} does not exist")
        self.conn = sqlite3.connect(db_name)
        self.conn.row_factory = sqlite3.Row

    def export_events(self) -> list[LegacyEvent]:
        logger.info("Exporting events from legacy database...")
        rows = self.conn.execute("SELECT id, name, date, capacity, created_at FROM events").fetchall()
        events = [
            LegacyEvent(
                id=r["id"],
                name=r["name"],
                date=_parse_timestamp(r["date"]),
                capacity=r["capacity"],
                created_at=_parse_timestamp(r["created_at"]),
            )
            for r in rows
        ]
        logger.info(f"Exported {len(events)} events")
        return events

    def export_attendees(self) -> list[LegacyAttendee]:
        logger.info("Exporting attendees from legacy database...")
        rows = self.conn.execute(
            "SELECT id, name, email, event_id, qr_code, checked_in, checked_in_at, created_at FROM attendees"
        ).fetchall()
        attendees = [
            LegacyAttendee(
                id=r["id"],
                name=r["name"],
                email=r["email"],
                event_id=r["event_id"],
                qr_code=r["qr_code"],
                checked_in=bool(r["checked_in"]),
                checked_in_at=_parse_timestamp(r["checked_in_at"]),
                created_at=_parse_timestamp(r["created_at"]),
            )
            for r in rows
        ]
        logger.info(f"Exported {len(attendees)} attendees")
        return attendees

    def close(self):
        self.conn.close()


def transform_event(legacy: LegacyEvent) -> Event:
    """Map a legacy event to the current schema under a fresh id."""
    return Event(
        id=new_id(),
        name=legacy.name,
        date=from_millis(to_millis(legacy.date)),
        capacity=legacy.capacity,
        created_at=from_millis(to_millis(legacy.created_at)),
    )


def transform_attendee(legacy: LegacyAttendee, event_id_map: dict[str, str]) -> Attendee:
    """
    Map a legacy attendee to the current schema.

    The attendee's event must already have been migrated; its scan token and
    check-in state are carried over unchanged.
    """
    event_id = event_id_map.get(legacy.event_id)
    if event_id is None:
        raise MigrationError("transform", f"No migrated event found for legacy event {legacy.event_id}")
    checked_in_at = from_millis(to_millis(legacy.checked_in_at)) if legacy.checked_in else None
    return Attendee(
        id=new_id(),
        name=legacy.name,
        email=legacy.email,
        event_id=event_id,
        scan_token=legacy.qr_code,
        created_at=from_millis(to_millis(legacy.created_at)),
        checked_in=legacy.checked_in and checked_in_at is not None,
        checked_in_at=checked_in_at,
    )


class Migration:
    def __init__(self, legacy: LegacyStore, target: Database, batch_size: int = BATCH_SIZE, dry_run: bool = False):
        self.legacy = legacy
        self.target = target
        self.batch_size = batch_size
        self.dry_run = dry_run

    def insert_events(self, events: list[LegacyEvent]) -> dict[str, str]:
        """Insert events one by one and return the legacy id -> new id map."""
        logger.info("Inserting events...")
        event_id_map = {}
        for legacy in events:
            event = transform_event(legacy)
            if not self.dry_run:
                self.target.add_event(event)
            event_id_map[legacy.id] = event.id
            logger.info(f"  Migrated event: {legacy.name} ({legacy.id} -> {event.id})")
        logger.info(f"Inserted {len(events)} events")
        return event_id_map

    def insert_attendees(self, attendees: list[LegacyAttendee], event_id_map: dict[str, str]) -> None:
        """Insert attendees in fixed-size batches, concurrently within a batch."""
        logger.info("Inserting attendees...")
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, len(attendees), self.batch_size):
                batch = [transform_attendee(a, event_id_map) for a in attendees[start:start + self.batch_size]]
                if self.dry_run:
                    continue
                futures = [pool.submit(self.target.add_attendee, a) for a in batch]
                for future in futures:
                    future.result()
                logger.info(f"  Migrated attendees {start + 1}-{start + len(batch)} of {len(attendees)}")
        logger.info(f"Inserted {len(attendees)} attendees")

    def validate(self, events: list[LegacyEvent], attendees: list[LegacyAttendee]) -> None:
        """Check the target against what was exported."""
        logger.info("Validating migration...")
        target_events = self.target.all_events()
        target_attendees = self.target.all_attendees()

        if len(target_events) != len(events):
            raise MigrationError(
                "validate", f"Event count mismatch! Legacy: {len(events)}, target: {len(target_events)}"
            )
        if len(target_attendees) != len(attendees):
            raise MigrationError(
                "validate", f"Attendee count mismatch! Legacy: {len(attendees)}, target: {len(target_attendees)}"
            )
        logger.info(f"Event count matches: {len(target_events)}")
        logger.info(f"Attendee count matches: {len(target_attendees)}")

        event_ids = {e["id"] for e in target_events}
        orphans = [a["id"] for a in target_attendees if a["event_id"] not in event_ids]
        if orphans:
            raise MigrationError("validate", f"{len(orphans)} attendees reference missing events")

        if events:
            sample = events[0]
            if not any(e["name"] == sample.name for e in target_events):
                raise MigrationError("validate", f'Sample event "{sample.name}" not found in target')
            logger.info(f"Sample event validated: {sample.name}")
        logger.info("Migration validation complete")

    def run(self) -> MigrationReport:
        events = self.legacy.export_events()
        attendees = self.legacy.export_attendees()

        if not events and not attendees:
            logger.warning("No data to migrate")
            return MigrationReport(events=0, attendees=0, dry_run=self.dry_run)

        event_id_map = self.insert_events(events)
        self.insert_attendees(attendees, event_id_map)

        if self.dry_run:
            logger.info("Dry run: nothing was written, skipping validation")
        else:
            self.validate(events, attendees)
        return MigrationReport(events=len(events), attendees=len(attendees), dry_run=self.dry_run)


def main(argv=None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Migrate events and attendees from the legacy database.")
    parser.add_argument("--legacy", default=os.getenv("LEGACY_DATABASE_PATH"), help="Path to the legacy SQLite database")
    parser.add_argument("--target", default=os.getenv("DATABASE_PATH", "events.db"), help="Path to the target database")
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE, help="Attendees inserted concurrently per batch")
    parser.add_argument("--dry-run", action="store_true", help="Export and transform only, write nothing")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(message)s")

    if not args.legacy:
        parser.error("--legacy or LEGACY_DATABASE_PATH is required")
    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")

    logger.info(f"Starting migration {args.legacy} -> {args.target}")
    legacy = None
    target = None
    try:
        legacy = LegacyStore(args.legacy)
        target = Database(args.target)
        report = Migration(legacy, target, batch_size=args.batch_size, dry_run=args.dry_run).run()
    except Exception:
        logger.exception("Migration failed")
        return 1
    finally:
        if legacy is not None:
            legacy.close()
        if target is not None:
            target.close()

    logger.info(f"Migration completed: {report.events} events, {report.attendees} attendees")
    if not report.dry_run:
        logger.info("Next steps:")
        logger.info("  1. Spot-check migrated events in the application")
        logger.info("  2. Point the application at the new database")
        logger.info("  3. Keep the legacy database for rollback")
    return 0


if __name__ == "__main__":
    sys.exit(main())
