import logging

from database import Database
from errors import (
    CapacityExceededError,
    CheckinError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from models import Attendee, CheckInResult, Event, EventWithAttendees
from utils import extract_scan_token, from_millis, generate_scan_token, new_id, parse_date, utcnow, validate_email

logger = logging.getLogger(__name__)

# largest value an SQLite INTEGER column holds
MAX_CAPACITY = 2**63 - 1

def event_from_row(row: dict) -> Event:
    return Event(
        id=row["id"],
        name=row["name"],
        date=from_millis(row["date"]),
        capacity=row["capacity"],
        created_at=from_millis(row["created_at"]),
        attendee_count=row.get("attendee_count"),
    )

def attendee_from_row(row: dict) -> Attendee:
    return Attendee(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        event_id=row["event_id"],
        scan_token=row["scan_token"],
        created_at=from_millis(row["created_at"]),
        checked_in=bool(row["checked_in"]),
        checked_in_at=from_millis(row["checked_in_at"]),
    )

class EventManager:
    def __init__(self, db: Database):
        """Initialize EventManager with database."""
        self.db = db

    def create_event(self, name: str, date, capacity: int) -> Event:
        """Create a new event."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("name", "Name is required")
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise ValidationError("capacity", "Capacity must be positive")
        if capacity > MAX_CAPACITY:
            raise ValidationError("capacity", "Capacity is too large")
        event = Event(
            id=new_id(),
            name=name,
            date=parse_date(date),
            capacity=capacity,
            created_at=utcnow(),
        )
        self.db.add_event(event)
        logger.info(f"Event {event.id} created with capacity {capacity}")
        return event

    def get_event(self, event_id: str) -> Event | None:
        """Retrieve an event by ID."""
        row = self.db.get_event(event_id)
        return event_from_row(row) if row else None

    def list_events(self) -> list[Event]:
        """Retrieve all events with attendee counts computed at read time."""
        return [event_from_row(r) for r in self.db.list_events()]

    def get_event_with_attendees(self, event_id: str, limit: int | None = None, offset: int = 0) -> EventWithAttendees | None:
        """Retrieve an event and its attendees, or None when it does not exist."""
        event = self.get_event(event_id)
        if not event:
            return None
        rows = self.db.list_attendees_for_event(event_id, limit=limit, offset=offset)
        return EventWithAttendees(event=event, attendees=[attendee_from_row(r) for r in rows])

    def get_attendee(self, attendee_id: str) -> Attendee | None:
        """Retrieve an attendee by ID."""
        row = self.db.get_attendee(attendee_id)
        return attendee_from_row(row) if row else None

class RegistrationService:
    def __init__(self, db: Database):
        self.db = db

    def register(self, event_id: str, name: str, email: str) -> Attendee:
        """
        Register an attendee for an event.

        Raises NotFoundError for an unknown event, ValidationError for a
        blank name or malformed email and CapacityExceededError when the
        event is full.
        """
        name = (name or "").strip()
        email = (email or "").strip()
        if not name:
            raise ValidationError("name", "Name is required")
        if not email or not validate_email(email):
            raise ValidationError("email", "Valid email is required")

        event_row = self.db.get_event(event_id)
        if event_row is None:
            raise NotFoundError("Event not found")

        attendee = Attendee(
            id=new_id(),
            name=name,
            email=email,
            event_id=event_id,
            scan_token=generate_scan_token(),
            created_at=utcnow(),
        )
        if not self.db.register_attendee(attendee):
            logger.warning(f"Registration rejected: event {event_id} is full ({event_row['capacity']})")
            raise CapacityExceededError(event_id, event_row["capacity"])
        logger.info(f"Attendee {attendee.id} registered for event {event_id}")
        return attendee

class CheckInService:
    def __init__(self, db: Database):
        self.db = db

    def check_in(self, scanned: str, event_id: str | None = None) -> CheckInResult:
        """
        Check in the attendee holding a scan token.

        `scanned` is either the bare token or the full check-in URL. When an
        event id is known (passed explicitly or embedded in the URL) the
        attendee must belong to that event. Failures are returned, not raised.
        """
        try:
            token, url_event_id = extract_scan_token(scanned or "")
            if not token:
                raise NotFoundError("Attendee not found")
            row = self.db.get_attendee_by_token(token)
            if row is None:
                raise NotFoundError("Attendee not found")
            return self._transition(attendee_from_row(row), event_id or url_event_id)
        except InternalError:
            logger.exception("Check-in failed")
            return CheckInResult(success=False, error="Failed to check in")
        except CheckinError as e:
            return self._failure(e)
        except Exception:
            logger.exception("Check-in failed")
            return CheckInResult(success=False, error="Failed to check in")

    def check_in_by_id(self, attendee_id: str, event_id: str | None = None) -> CheckInResult:
        """Administrative check-in by attendee identity instead of scan token."""
        try:
            row = self.db.get_attendee(attendee_id)
            if row is None:
                raise NotFoundError("Attendee not found")
            return self._transition(attendee_from_row(row), event_id)
        except InternalError:
            logger.exception("Check-in failed")
            return CheckInResult(success=False, error="Failed to check in")
        except CheckinError as e:
            return self._failure(e)
        except Exception:
            logger.exception("Check-in failed")
            return CheckInResult(success=False, error="Failed to check in")

    def get_attendee(self, scanned: str) -> dict | None:
        """Preview of the ticket holder before check-in. Accepts a bare token or the check-in URL."""
        token, _ = extract_scan_token(scanned or "")
        if not token:
            return None
        row = self.db.get_attendee_by_token(token)
        if row is None:
            return None
        attendee = attendee_from_row(row)
        event = self.db.get_event(attendee.event_id)
        data = attendee.summary()
        data["eventId"] = attendee.event_id
        data["eventName"] = event["name"] if event else "Unknown Event"
        return data

    def _transition(self, attendee: Attendee, event_id: str | None) -> CheckInResult:
        if event_id is not None and attendee.event_id != event_id:
            raise ForbiddenError("Attendee not registered for this event")

        now = utcnow()
        if self.db.mark_checked_in(attendee.id, now):
            attendee.checked_in = True
            attendee.checked_in_at = now
            logger.info(f"Attendee {attendee.id} checked in to event {attendee.event_id}")
            return CheckInResult(success=True, already_checked_in=False, attendee=attendee)

        # Someone else got there first; report the stored timestamp.
        current = attendee_from_row(self.db.get_attendee(attendee.id))
        logger.info(f"Attendee {attendee.id} already checked in at {current.checked_in_at}")
        return CheckInResult(success=True, already_checked_in=True, attendee=current)

    def _failure(self, error: CheckinError) -> CheckInResult:
        logger.warning(f"Check-in rejected: {error}")
        return CheckInResult(success=False, error=error.message)
