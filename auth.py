from fastapi import Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from dotenv import load_dotenv
import os
from datetime import datetime, timedelta, UTC

load_dotenv()

# JWT configuration
SECRET_KEY = os.getenv("SECRET_KEY", "default-secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

class TokenData(BaseModel):
    email: str
    kind: str = "access"

def _encode(data: dict, expires: timedelta, kind: str) -> str:
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(UTC) + expires, "type": kind})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def create_access_token(data: dict):
    """Create a JWT access token."""
    return _encode(data, timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES), "access")

def create_refresh_token(data: dict):
    """Create a JWT refresh token."""
    return _encode(data, timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS), "refresh")

def decode_token(token: str) -> TokenData:
    """Decode a JWT, raising JWTError when it is invalid or expired."""
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    email = payload.get("sub")
    if email is None:
        raise JWTError("Token has no subject")
    return TokenData(email=email, kind=payload.get("type", "access"))

async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)):
    """Retrieve the signed-in staff member from a JWT access token."""
    credentials_exception = HTTPException(
        status_code=401,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        token_data = decode_token(token)
    except JWTError:
        raise credentials_exception
    if token_data.kind != "access":
        raise credentials_exception
    user = request.app.state.db.get_user_by_email(token_data.email)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user

def require_role(*roles: str):
    """Dependency factory restricting a route to the given staff roles."""
    async def checker(current_user=Depends(get_current_user)):
        if current_user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Access denied: insufficient role")
        return current_user
    return checker
