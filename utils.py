from datetime import datetime, UTC
from io import BytesIO, StringIO
from urllib.parse import urlencode, urlparse, parse_qs
import csv
import re
import secrets
import uuid

import qrcode

from errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

def utcnow() -> datetime:
    """Current instant, truncated to millisecond precision like the store."""
    return from_millis(to_millis(datetime.now(UTC)))

def to_millis(value: datetime | None) -> int | None:
    """Convert a datetime to epoch milliseconds."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(round(value.timestamp() * 1000))

def from_millis(value: int | None) -> datetime | None:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, UTC)

def parse_date(value) -> datetime:
    """Parse epoch milliseconds or a date string into a datetime object."""
    if isinstance(value, bool):
        raise ValidationError("date", "Invalid date format")
    if isinstance(value, (int, float)):
        try:
            return from_millis(int(value))
        except (ValueError, OverflowError, OSError):
            raise ValidationError("date", "Invalid date format")
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.strptime(value, "%Y-%m-%d %H:%M")
        except (TypeError, ValueError):
            raise ValidationError("date", "Invalid date format")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed

def new_id() -> str:
    return str(uuid.uuid4())

def generate_scan_token() -> str:
    """Unguessable credential printed on the ticket."""
    return secrets.token_urlsafe(24)

def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))

def build_checkin_url(base_url: str, event_id: str, scan_token: str) -> str:
    """Build the URL encoded into an attendee's ticket."""
    query = urlencode({"token": scan_token})
    return f"{base_url.rstrip('/')}/events/{event_id}/checkin?{query}"

def extract_scan_token(scanned: str) -> tuple[str, str | None]:
    """
    Pull the scan token (and event id, when present) out of a scanned value.

    Scanners may hand over either the bare token or the full check-in URL.
    """
    scanned = scanned.strip()
    parsed = urlparse(scanned)
    if not parsed.scheme or not parsed.netloc:
        return scanned, None
    tokens = parse_qs(parsed.query).get("token")
    if not tokens or not tokens[0]:
        raise ValidationError("scanToken", "Scanned URL has no token")
    parts = [p for p in parsed.path.split("/") if p]
    event_id = None
    if len(parts) >= 3 and parts[0] == "events" and parts[2] == "checkin":
        event_id = parts[1]
    return tokens[0], event_id

def generate_csv(attendees):
    """Generate a CSV string from a list of attendees."""
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["ID", "Name", "Email", "Checked In", "Checked In At"])
    for a in attendees:
        checked_in_at = a.checked_in_at.isoformat() if a.checked_in_at else ""
        writer.writerow([a.id, a.name, a.email, "yes" if a.checked_in else "no", checked_in_at])
    buffer.seek(0)
    return buffer

def render_qr_png(payload: str) -> BytesIO:
    """Render a payload as a PNG QR code."""
    img = qrcode.make(payload)
    buf = BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return buf
