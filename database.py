import functools
import sqlite3
import threading

from errors import InternalError
from utils import to_millis

def store_errors(method):
    """Re-raise sqlite failures as InternalError, keeping the cause chained."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise InternalError(f"{method.__name__} failed: {e}") from e
    return wrapper

class Database:
    def __init__(self, db_name="events.db"):
        """
        Initialize SQLite database connection.
        The connection is shared by every request thread, so all access goes
        through a single lock.
        """
        self.conn = sqlite3.connect(db_name, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute('PRAGMA foreign_keys = ON')
        self._lock = threading.RLock()
        self.create_tables()

    def create_tables(self):
        """Create database tables with appropriate indexes."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    role TEXT NOT NULL CHECK(role IN ('organizer', 'staff'))
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    date INTEGER NOT NULL,
                    capacity INTEGER NOT NULL CHECK(capacity > 0),
                    created_at INTEGER NOT NULL
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS attendees (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    scan_token TEXT NOT NULL,
                    checked_in INTEGER NOT NULL DEFAULT 0,
                    checked_in_at INTEGER,
                    created_at INTEGER NOT NULL,
                    FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE,
                    CHECK ((checked_in = 0) = (checked_in_at IS NULL))
                )
            ''')
            cursor.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_attendees_scan_token ON attendees(scan_token)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_attendees_event_id ON attendees(event_id)')
            self.conn.commit()

    @store_errors
    def add_event(self, event):
        """Add an event to the database."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                INSERT OR IGNORE INTO events (id, name, date, capacity, created_at)
                VALUES (?, ?, ?, ?, ?)
            ''', (event.id, event.name, to_millis(event.date), event.capacity, to_millis(event.created_at)))
            self.conn.commit()
            return cursor.rowcount > 0

    @store_errors
    def get_event(self, event_id):
        """Retrieve an event by ID."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT * FROM events WHERE id = ?', (event_id,))
            row = cursor.fetchone()
        return dict(row) if row else None

    @store_errors
    def list_events(self):
        """Retrieve all events with their attendee counts, soonest first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                SELECT e.*, COUNT(a.id) AS attendee_count
                FROM events e
                LEFT JOIN attendees a ON a.event_id = e.id
                GROUP BY e.id
                ORDER BY e.date, e.created_at
            ''')
            rows = cursor.fetchall()
        return [dict(r) for r in rows]

    @store_errors
    def all_events(self):
        """Retrieve every event row, unordered. Used by migration validation."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT * FROM events')
            return [dict(r) for r in cursor.fetchall()]

    @store_errors
    def register_attendee(self, attendee):
        """
        Insert an attendee only if the event still has room.

        Count and insert happen in one statement, so concurrent registrations
        cannot push the event past its capacity. Returns False when the event
        is full or does not exist.
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                INSERT INTO attendees (id, name, email, event_id, scan_token, checked_in, checked_in_at, created_at)
                SELECT ?, ?, ?, e.id, ?, 0, NULL, ?
                FROM events e
                WHERE e.id = ?
                  AND (SELECT COUNT(*) FROM attendees WHERE event_id = e.id) < e.capacity
            ''', (attendee.id, attendee.name, attendee.email, attendee.scan_token,
                  to_millis(attendee.created_at), attendee.event_id))
            self.conn.commit()
            return cursor.rowcount > 0

    @store_errors
    def add_attendee(self, attendee):
        """Insert an attendee as-is, check-in state included. Migration only."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                INSERT INTO attendees (id, name, email, event_id, scan_token, checked_in, checked_in_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (attendee.id, attendee.name, attendee.email, attendee.event_id, attendee.scan_token,
                  int(attendee.checked_in), to_millis(attendee.checked_in_at), to_millis(attendee.created_at)))
            self.conn.commit()

    @store_errors
    def get_attendee_count(self, event_id):
        """Get the number of attendees for an event."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT COUNT(*) FROM attendees WHERE event_id = ?', (event_id,))
            result = cursor.fetchone()
        return result[0] if result else 0

    @store_errors
    def get_attendee(self, attendee_id):
        """Retrieve an attendee by ID."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT * FROM attendees WHERE id = ?', (attendee_id,))
            row = cursor.fetchone()
        return dict(row) if row else None

    @store_errors
    def get_attendee_by_token(self, scan_token):
        """Retrieve an attendee by scan token."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT * FROM attendees WHERE scan_token = ?', (scan_token,))
            row = cursor.fetchone()
        return dict(row) if row else None

    @store_errors
    def list_attendees_for_event(self, event_id, limit=None, offset=0):
        """Retrieve attendees for an event in registration order."""
        query = 'SELECT * FROM attendees WHERE event_id = ? ORDER BY created_at, rowid'
        params = [event_id]
        if limit is not None:
            query += ' LIMIT ? OFFSET ?'
            params += [limit, offset]
        elif offset:
            query += ' LIMIT -1 OFFSET ?'
            params.append(offset)
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            return [dict(r) for r in cursor.fetchall()]

    @store_errors
    def all_attendees(self):
        """Retrieve every attendee row. Used by migration validation."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT * FROM attendees')
            return [dict(r) for r in cursor.fetchall()]

    @store_errors
    def mark_checked_in(self, attendee_id, checked_in_at):
        """
        Flip an attendee to checked in, only if they are not already.

        Returns True when this call performed the transition.
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                UPDATE attendees SET checked_in = 1, checked_in_at = ?
                WHERE id = ? AND checked_in = 0
            ''', (to_millis(checked_in_at), attendee_id))
            self.conn.commit()
            return cursor.rowcount == 1

    @store_errors
    def add_user(self, user):
        """Add a staff user. Returns False when the email is already taken."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                INSERT OR IGNORE INTO users (id, name, email, password, role)
                VALUES (?, ?, ?, ?, ?)
            ''', (user.id, user.name, user.email, user.password, user.role))
            self.conn.commit()
            return cursor.rowcount > 0

    @store_errors
    def get_user_by_email(self, email):
        """Retrieve a staff user by email."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT * FROM users WHERE email = ?', (email,))
            row = cursor.fetchone()
        return dict(row) if row else None

    def close(self):
        """Close the database connection."""
        self.conn.close()
