from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from utils import to_millis

@dataclass
class Event:
    id: str
    name: str
    date: datetime
    capacity: int
    created_at: datetime
    attendee_count: Optional[int] = None  # filled in by list queries only

    def to_dict(self) -> dict:
        """Return the wire representation of the event."""
        data = {
            "id": self.id,
            "name": self.name,
            "date": to_millis(self.date),
            "capacity": self.capacity,
            "createdAt": to_millis(self.created_at),
        }
        if self.attendee_count is not None:
            data["attendeeCount"] = self.attendee_count
        return data

@dataclass
class Attendee:
    id: str
    name: str
    email: str
    event_id: str
    scan_token: str
    created_at: datetime
    checked_in: bool = False
    checked_in_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the full wire representation, scan token included."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "eventId": self.event_id,
            "scanToken": self.scan_token,
            "checkedIn": self.checked_in,
            "checkedInAt": to_millis(self.checked_in_at),
            "createdAt": to_millis(self.created_at),
        }

    def summary(self) -> dict:
        """Projection used in event detail pages."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "checkedIn": self.checked_in,
            "checkedInAt": to_millis(self.checked_in_at),
        }

@dataclass
class EventWithAttendees:
    event: Event
    attendees: list[Attendee] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.event.to_dict()
        data["attendees"] = [a.summary() for a in self.attendees]
        return data

@dataclass
class User:
    id: str
    name: str
    email: str
    password: str
    role: str  # 'organizer' or 'staff'

@dataclass
class CheckInResult:
    success: bool
    already_checked_in: bool = False
    attendee: Optional[Attendee] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Return the discriminated success/failure shape."""
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "alreadyCheckedIn": self.already_checked_in,
            "attendee": {
                "name": self.attendee.name,
                "email": self.attendee.email,
                "checkedInAt": to_millis(self.attendee.checked_in_at),
            },
        }
