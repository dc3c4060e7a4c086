import pytest
from fastapi.testclient import TestClient
from main import GENERIC_ERROR, create_app
from database import Database
from passlib.hash import bcrypt
from models import User
from utils import new_id

@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "test.db"))

@pytest.fixture
def client(db):
    with TestClient(create_app(db)) as c:
        yield c

@pytest.fixture
def organizer_user(db):
    user = User(
        id=new_id(),
        name="Test Organizer",
        email="organizer@example.com",
        password=bcrypt.hash("password123"),
        role="organizer"
    )
    db.add_user(user)
    return user

@pytest.fixture
def staff_user(db):
    user = User(
        id=new_id(),
        name="Door Staff",
        email="staff@example.com",
        password=bcrypt.hash("password123"),
        role="staff"
    )
    db.add_user(user)
    return user

def login(client, email):
    response = client.post("/auth/login", json={"email": email, "password": "password123"})
    return {"Authorization": f"Bearer {response.json()['access_token']}"}

@pytest.fixture
def auth_headers(client, organizer_user):
    return login(client, "organizer@example.com")

@pytest.fixture
def event(client, auth_headers):
    response = client.post("/events", json={
        "name": "Test Event",
        "date": 1767261600000,
        "capacity": 2
    }, headers=auth_headers)
    return response.json()["data"]

def register(client, event_id, name="Alice", email="alice@example.com"):
    return client.post(f"/events/{event_id}/register", json={"name": name, "email": email})

def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Welcome to Event Check-in API"

def test_register_user(client):
    response = client.post("/auth/register", json={
        "name": "Test User",
        "email": "test@example.com",
        "password": "password123",
        "role": "staff"
    })
    assert response.status_code == 201
    assert response.json()["message"] == "User registered"

def test_register_user_twice(client, organizer_user):
    response = client.post("/auth/register", json={
        "name": "Again",
        "email": "organizer@example.com",
        "password": "password123",
        "role": "organizer"
    })
    assert response.status_code == 400

def test_login_success(client, organizer_user):
    response = client.post("/auth/login", json={"email": "organizer@example.com", "password": "password123"})
    assert response.status_code == 200
    assert "access_token" in response.json()
    assert "refresh_token" in response.json()

def test_login_wrong_password(client, organizer_user):
    response = client.post("/auth/login", json={"email": "organizer@example.com", "password": "nope"})
    assert response.status_code == 401

def test_refresh_token(client, organizer_user):
    tokens = client.post("/auth/login", json={"email": "organizer@example.com", "password": "password123"}).json()
    response = client.post("/auth/refresh", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert response.status_code == 200
    assert response.json()["data"]["access_token"]

def test_access_token_cannot_refresh(client, auth_headers):
    response = client.post("/auth/refresh", headers=auth_headers)
    assert response.status_code == 401

def test_create_event(client, auth_headers):
    response = client.post("/events", json={
        "name": "Test Event",
        "date": 1767261600000,
        "capacity": 50
    }, headers=auth_headers)
    assert response.status_code == 201
    data = response.json()["data"]
    assert response.json()["message"] == "Event created"
    assert data["name"] == "Test Event"
    assert data["date"] == 1767261600000
    assert data["capacity"] == 50
    assert isinstance(data["createdAt"], int)

def test_create_event_iso_date(client, auth_headers):
    response = client.post("/events", json={
        "name": "ISO Event",
        "date": "2026-01-01T10:00:00+00:00",
        "capacity": 5
    }, headers=auth_headers)
    assert response.status_code == 201
    assert response.json()["data"]["date"] == 1767261600000

def test_create_event_requires_login(client):
    response = client.post("/events", json={"name": "Nope", "date": 1767261600000, "capacity": 5})
    assert response.status_code == 401

def test_create_event_requires_organizer(client, staff_user):
    response = client.post("/events", json={
        "name": "Nope",
        "date": 1767261600000,
        "capacity": 5
    }, headers=login(client, "staff@example.com"))
    assert response.status_code == 403

def test_invalid_capacity(client, auth_headers):
    response = client.post("/events", json={
        "name": "Invalid Event",
        "date": 1767261600000,
        "capacity": 0
    }, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Capacity must be positive"
    assert response.json()["code"] == "VALIDATION_ERROR"

def test_invalid_date(client, auth_headers):
    response = client.post("/events", json={
        "name": "Bad Date",
        "date": "next tuesday",
        "capacity": 10
    }, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid date format"

def test_out_of_range_epoch_date(client, auth_headers):
    response = client.post("/events", json={
        "name": "Far Future",
        "date": 10**16,
        "capacity": 10
    }, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid date format"
    assert response.json()["code"] == "VALIDATION_ERROR"

def test_capacity_too_large(client, auth_headers):
    response = client.post("/events", json={
        "name": "Stadium",
        "date": 1767261600000,
        "capacity": 2**70
    }, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert client.get("/events").json()["data"] == []

def test_store_failure_returns_generic_error(client, db):
    db.conn.close()
    response = client.get("/events")
    assert response.status_code == 500
    assert response.json() == {"detail": GENERIC_ERROR, "code": "INTERNAL_ERROR"}
    assert "closed" not in response.text

def test_unexpected_error_returns_generic_error(db, monkeypatch):
    app = create_app(db)

    def boom():
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(app.state.event_manager, "list_events", boom)
    with TestClient(app, raise_server_exceptions=False) as c:
        response = c.get("/events")
    assert response.status_code == 500
    assert response.json() == {"detail": GENERIC_ERROR, "code": "INTERNAL_ERROR"}
    assert "disk on fire" not in response.text

def test_list_events(client, event):
    register(client, event["id"])
    response = client.get("/events")
    assert response.status_code == 200
    assert response.json()["message"] == "Events retrieved"
    data = response.json()["data"]
    assert len(data) == 1
    assert data[0]["attendeeCount"] == 1

def test_attendee_count_matches_detail(client, event):
    register(client, event["id"], "Alice", "alice@example.com")
    register(client, event["id"], "Bob", "bob@example.com")
    listed = client.get("/events").json()["data"][0]
    detail = client.get(f"/events/{event['id']}").json()["data"]
    assert listed["attendeeCount"] == len(detail["attendees"]) == 2

def test_get_event_not_found(client):
    response = client.get("/events/missing")
    assert response.status_code == 404

def test_get_event_paginated(client, event):
    register(client, event["id"], "Alice", "alice@example.com")
    register(client, event["id"], "Bob", "bob@example.com")
    response = client.get(f"/events/{event['id']}", params={"limit": 1, "offset": 1})
    attendees = response.json()["data"]["attendees"]
    assert [a["name"] for a in attendees] == ["Bob"]

def test_register_attendee(client, event):
    response = register(client, event["id"])
    assert response.status_code == 201
    assert response.json()["message"] == "Alice registered"
    data = response.json()["data"]
    assert data["checkedIn"] is False
    assert data["checkedInAt"] is None
    assert data["scanToken"]
    assert data["checkinUrl"].endswith(f"/events/{event['id']}/checkin?token={data['scanToken']}")

def test_register_unknown_event(client):
    response = register(client, "missing")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"

def test_register_invalid_email(client, event):
    response = register(client, event["id"], email="not-an-email")
    assert response.status_code == 400
    assert response.json()["detail"] == "Valid email is required"

def test_register_event_full(client, event):
    assert register(client, event["id"], "Alice", "alice@example.com").status_code == 201
    assert register(client, event["id"], "Bob", "bob@example.com").status_code == 201
    response = register(client, event["id"], "Carol", "carol@example.com")
    assert response.status_code == 409
    assert response.json()["code"] == "CAPACITY_EXCEEDED"
    assert response.json()["detail"] == "Event is at full capacity"

def test_get_attendee(client, event):
    attendee = register(client, event["id"]).json()["data"]
    response = client.get(f"/attendees/{attendee['id']}")
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "alice@example.com"
    assert client.get("/attendees/missing").status_code == 404

def test_attendee_qr_code(client, event):
    attendee = register(client, event["id"]).json()["data"]
    response = client.get(f"/attendees/{attendee['id']}/qr.png")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")

def test_check_in_twice(client, event):
    attendee = register(client, event["id"]).json()["data"]
    first = client.post("/checkin", json={"scanToken": attendee["scanToken"]})
    second = client.post("/checkin", json={"scanToken": attendee["scanToken"]})
    assert first.json()["message"] == "Successfully checked in"
    assert first.json()["data"]["success"] is True
    assert first.json()["data"]["alreadyCheckedIn"] is False
    assert second.json()["message"] == "Already checked in"
    assert second.json()["data"]["alreadyCheckedIn"] is True
    assert first.json()["data"]["attendee"]["checkedInAt"] == second.json()["data"]["attendee"]["checkedInAt"]

def test_check_in_with_scanned_url(client, event):
    attendee = register(client, event["id"]).json()["data"]
    response = client.post("/checkin", json={"scanToken": attendee["checkinUrl"]})
    assert response.json()["data"]["success"] is True

def test_check_in_unknown_token(client):
    response = client.post("/checkin", json={"scanToken": "nonexistent-token"})
    assert response.status_code == 200
    assert response.json()["data"] == {"success": False, "error": "Attendee not found"}

def test_check_in_wrong_event(client, event, auth_headers):
    other = client.post("/events", json={
        "name": "Other Event",
        "date": 1767261600000,
        "capacity": 5
    }, headers=auth_headers).json()["data"]
    attendee = register(client, event["id"]).json()["data"]
    response = client.post("/checkin", json={"scanToken": attendee["scanToken"], "eventId": other["id"]})
    assert response.json()["data"] == {"success": False, "error": "Attendee not registered for this event"}

def test_preview_checkin(client, event):
    attendee = register(client, event["id"]).json()["data"]
    response = client.get(f"/checkin/{attendee['scanToken']}")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["eventName"] == "Test Event"
    assert data["checkedIn"] is False
    assert client.get("/checkin/nope").status_code == 404

def test_manual_check_in(client, event, staff_user):
    attendee = register(client, event["id"]).json()["data"]
    url = f"/events/{event['id']}/attendees/{attendee['id']}/checkin"
    assert client.post(url).status_code == 401
    response = client.post(url, headers=login(client, "staff@example.com"))
    assert response.status_code == 200
    assert response.json()["message"] == "Checked in"
    assert response.json()["data"]["alreadyCheckedIn"] is False

def test_check_in_store_failure(client, event, db):
    attendee = register(client, event["id"]).json()["data"]
    db.conn.close()
    response = client.post("/checkin", json={"scanToken": attendee["scanToken"]})
    assert response.status_code == 200
    assert response.json()["data"] == {"success": False, "error": "Failed to check in"}

def test_manual_check_in_wrong_event(client, event, auth_headers):
    other = client.post("/events", json={
        "name": "Other Event",
        "date": 1767261600000,
        "capacity": 5
    }, headers=auth_headers).json()["data"]
    attendee = register(client, event["id"]).json()["data"]
    response = client.post(f"/events/{other['id']}/attendees/{attendee['id']}/checkin", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Check-in failed"
    assert response.json()["data"] == {"success": False, "error": "Attendee not registered for this event"}
    assert client.get(f"/attendees/{attendee['id']}").json()["data"]["checkedIn"] is False

def test_export_attendees(client, event, auth_headers):
    attendee = register(client, event["id"]).json()["data"]
    client.post("/checkin", json={"scanToken": attendee["scanToken"]})
    response = client.get(f"/events/{event['id']}/attendees/export", headers=auth_headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0] == "ID,Name,Email,Checked In,Checked In At"
    assert lines[1].startswith(f"{attendee['id']},Alice,alice@example.com,yes,")
