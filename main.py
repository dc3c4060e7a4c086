from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi import status
from passlib.hash import bcrypt
from pydantic import BaseModel
from typing import Literal, Optional, Union
from models import User
from manager import CheckInService, EventManager, RegistrationService
from database import Database
from auth import create_access_token, create_refresh_token, decode_token, oauth2_scheme, require_role
from errors import CheckinError, InternalError
from utils import build_checkin_url, generate_csv, new_id, render_qr_png
from jose import JWTError
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
import os

load_dotenv()  # Load variables from .env file
DATABASE_PATH = os.getenv("DATABASE_PATH", "events.db")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
CHECKIN_BASE_URL = os.getenv("CHECKIN_BASE_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong, please try again"

# -------------------------------
# Schemas
# -------------------------------
class EventCreate(BaseModel):
    name: str
    date: Union[int, str]
    capacity: int

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Python Meetup",
                "date": 1767261600000,
                "capacity": 50,
            }
        }
    }

class AttendeeCreate(BaseModel):
    name: str
    email: str

class CheckInRequest(BaseModel):
    scanToken: str
    eventId: Optional[str] = None

class UserRegister(BaseModel):
    name: str
    email: str
    password: str
    role: Literal["organizer", "staff"]

class UserLogin(BaseModel):
    email: str
    password: str

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str

# -------------------------------
# Dependencies
# -------------------------------
def get_event_manager(request: Request) -> EventManager:
    return request.app.state.event_manager

def get_registration(request: Request) -> RegistrationService:
    return request.app.state.registration

def get_checkin(request: Request) -> CheckInService:
    return request.app.state.checkin

def get_db(request: Request) -> Database:
    return request.app.state.db

organizer_only = require_role("organizer")
door_staff = require_role("organizer", "staff")

router = APIRouter()

@router.get("/", response_model=dict, summary="API root endpoint")
def root():
    """Welcome message for the Event Check-in API."""
    return {"message": "Welcome to Event Check-in API", "data": {}}

# -------------------------------
# Auth Routes
# -------------------------------
@router.post("/auth/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register a staff account")
def register_user(user: UserRegister, db: Database = Depends(get_db)):
    """Register an organizer or door staff account."""
    user_obj = User(new_id(), user.name, user.email, bcrypt.hash(user.password), user.role)
    if not db.add_user(user_obj):
        raise HTTPException(status_code=400, detail="User already exists")
    logger.info(f"User {user.email} registered with role {user.role}")
    return {"message": "User registered", "data": {"email": user.email}}

@router.post("/auth/login", response_model=TokenResponse, summary="Login and receive access/refresh tokens")
def login(user: UserLogin, db: Database = Depends(get_db)):
    """Authenticate a staff member and return access and refresh tokens."""
    db_user = db.get_user_by_email(user.email)
    if not db_user or not bcrypt.verify(user.password, db_user["password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    logger.info(f"User {user.email} logged in")
    return {
        "access_token": create_access_token(data={"sub": user.email}),
        "refresh_token": create_refresh_token(data={"sub": user.email}),
    }

@router.post("/auth/refresh", response_model=dict, summary="Refresh access token")
def refresh(token: str = Depends(oauth2_scheme)):
    """Exchange a refresh token for a new access token."""
    credentials_exception = HTTPException(
        status_code=401,
        detail="Invalid refresh token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        token_data = decode_token(token)
    except JWTError as e:
        logger.warning(f"Refresh rejected: {e}")
        raise credentials_exception
    if token_data.kind != "refresh":
        raise credentials_exception
    access_token = create_access_token(data={"sub": token_data.email})
    logger.info(f"Token refreshed for {token_data.email}")
    return {"message": "Token refreshed", "data": {"access_token": access_token}}

# -------------------------------
# Event Routes
# -------------------------------
@router.post("/events", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a new event")
def create_event(event: EventCreate, manager: EventManager = Depends(get_event_manager), current_user=Depends(organizer_only)):
    """Create a new event."""
    evt = manager.create_event(event.name, event.date, event.capacity)
    logger.info(f"Event {evt.id} created by {current_user['email']}")
    return {"message": "Event created", "data": evt.to_dict()}

@router.get("/events", response_model=dict, summary="List all events")
def list_events(manager: EventManager = Depends(get_event_manager)):
    """Retrieve all events with their attendee counts."""
    events = manager.list_events()
    return {"message": "Events retrieved", "data": [e.to_dict() for e in events]}

@router.get("/events/{event_id}", response_model=dict, summary="Get an event with its attendees")
def get_event(
    event_id: str,
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    manager: EventManager = Depends(get_event_manager),
):
    """Retrieve an event and its attendee list."""
    result = manager.get_event_with_attendees(event_id, limit=limit, offset=offset)
    if result is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return {"message": "Event retrieved", "data": result.to_dict()}

@router.get("/events/{event_id}/attendees/export", response_model=None, summary="Export attendees as CSV")
def export_attendees(event_id: str, manager: EventManager = Depends(get_event_manager), current_user=Depends(organizer_only)):
    """Export the list of attendees for an event as a CSV file."""
    result = manager.get_event_with_attendees(event_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Event not found")
    csv_data = generate_csv(result.attendees)
    logger.info(f"Attendees exported for event {event_id} by {current_user['email']}")
    return StreamingResponse(csv_data, media_type="text/csv", headers={"Content-Disposition": "attachment; filename=attendees.csv"})

# -------------------------------
# Attendee Routes
# -------------------------------
@router.post("/events/{event_id}/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register an attendee for an event")
def register_attendee(event_id: str, attendee: AttendeeCreate, registration: RegistrationService = Depends(get_registration)):
    """Register an attendee and hand back their scan token."""
    att = registration.register(event_id, attendee.name, attendee.email)
    data = att.to_dict()
    data["checkinUrl"] = build_checkin_url(CHECKIN_BASE_URL, event_id, att.scan_token)
    return {"message": f"{att.name} registered", "data": data}

@router.get("/attendees/{attendee_id}", response_model=dict, summary="Get an attendee's ticket")
def get_attendee(attendee_id: str, manager: EventManager = Depends(get_event_manager)):
    """Retrieve an attendee for ticket display."""
    att = manager.get_attendee(attendee_id)
    if att is None:
        raise HTTPException(status_code=404, detail="Attendee not found")
    return {"message": "Attendee retrieved", "data": att.to_dict()}

@router.get("/attendees/{attendee_id}/qr.png", response_model=None, summary="Render an attendee's ticket QR code")
def attendee_qr(attendee_id: str, manager: EventManager = Depends(get_event_manager)):
    """PNG QR code encoding the attendee's check-in URL."""
    att = manager.get_attendee(attendee_id)
    if att is None:
        raise HTTPException(status_code=404, detail="Attendee not found")
    url = build_checkin_url(CHECKIN_BASE_URL, att.event_id, att.scan_token)
    return StreamingResponse(render_qr_png(url), media_type="image/png")

# -------------------------------
# Check-in Routes
# -------------------------------
@router.post("/checkin", response_model=dict, summary="Check in a scanned ticket")
def check_in(payload: CheckInRequest, checkin: CheckInService = Depends(get_checkin)):
    """Check in the holder of a scan token. Failures come back in the body."""
    result = checkin.check_in(payload.scanToken, payload.eventId)
    if not result.success:
        return {"message": "Check-in failed", "data": result.to_dict()}
    message = "Already checked in" if result.already_checked_in else "Successfully checked in"
    return {"message": message, "data": result.to_dict()}

@router.get("/checkin/{scan_token}", response_model=dict, summary="Preview a scanned ticket")
def preview_checkin(scan_token: str, checkin: CheckInService = Depends(get_checkin)):
    """Show who a scan token belongs to before checking them in."""
    data = checkin.get_attendee(scan_token)
    if data is None:
        raise HTTPException(status_code=404, detail="Attendee not found")
    return {"message": "Attendee retrieved", "data": data}

@router.post("/events/{event_id}/attendees/{attendee_id}/checkin", response_model=dict, summary="Check in an attendee manually")
def manual_check_in(event_id: str, attendee_id: str, checkin: CheckInService = Depends(get_checkin), current_user=Depends(door_staff)):
    """Check in an attendee from the event's attendee list."""
    result = checkin.check_in_by_id(attendee_id, event_id)
    message = "Check-in failed" if not result.success else "Checked in"
    return {"message": message, "data": result.to_dict()}

# -------------------------------
# App
# -------------------------------
def create_app(db: Database) -> FastAPI:
    """Build the API around an explicit database handle."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Closing database connection")
        db.close()

    app = FastAPI(title="Event Check-in API", lifespan=lifespan)
    app.state.db = db
    app.state.event_manager = EventManager(db)
    app.state.registration = RegistrationService(db)
    app.state.checkin = CheckInService(db)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CheckinError)
    async def checkin_error_handler(request: Request, exc: CheckinError):
        if isinstance(exc, InternalError) or exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
            detail = GENERIC_ERROR
        else:
            detail = exc.message
        return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.error_code})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} failed")
        return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR, "code": InternalError.default_code})

    app.include_router(router)
    return app

app = create_app(Database(DATABASE_PATH))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
