import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlmodel import select

from config import settings
from db import SessionDep
from models import Profile, Role, User
from schemas import LoginData, SignupData

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

serializer = URLSafeTimedSerializer(settings.SECRET_KEY)

SESSION_COOKIE = "session"


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_session_token(user_id: int) -> str:
    """
    Store the user id in the signed token.
    Example data:
        {"user_id": 3}
    The role is looked up in the roles table on every request.
    """
    return serializer.dumps({"user_id": user_id})


def verify_session_token(token: str, max_age_seconds: int = settings.SESSION_MAX_AGE):
    """
    Returns dict {'user_id': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadSignature:
        return None


def _resolve_session(session: SessionDep, session_token: Optional[str]) -> Optional[dict]:
    if session_token is None:
        return None

    data = verify_session_token(session_token)
    if not data:
        return None

    profile = session.get(Profile, data["user_id"])
    role = session.get(Role, data["user_id"])
    if profile is None or role is None:
        return None

    return {"user": profile, "role": role.role}


def get_current_user_and_role(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> dict:
    """
    Reads the 'session' cookie, verifies the token,
    looks up the profile and role, and returns {"user": Profile, "role": str}.
    Raises 401 if not logged in / invalid.
    """
    if session_token is None:
        raise HTTPException(status_code=401, detail="Not logged in")

    current = _resolve_session(session, session_token)
    if current is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return current


CurrentUserRoleDep = Annotated[dict, Depends(get_current_user_and_role)]


def get_optional_user_and_role(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Optional[dict]:
    """
    Like get_current_user_and_role, but returns None instead of raising 401.
    """
    return _resolve_session(session, session_token)


OptionalUserRoleDep = Annotated[Optional[dict], Depends(get_optional_user_and_role)]


def require_role(role: str):
    """Build a dependency that only lets users holding `role` through."""

    def dependency(current: CurrentUserRoleDep) -> dict:
        if current["role"] != role:
            raise HTTPException(status_code=401, detail="Not authorized")
        return current

    return dependency


AdminDep = Annotated[dict, Depends(require_role("admin"))]
StudentDep = Annotated[dict, Depends(require_role("user"))]


async def _read_payload(request: Request) -> dict:
    """Accept either JSON (API clients) or form-data (HTML forms)."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        data = await request.json()
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Invalid data format")
        return data

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str) and value}


def _session_response(payload: dict, user_id: int) -> JSONResponse:
    resp = JSONResponse(payload)
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_token(user_id),
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=settings.SESSION_MAX_AGE,
    )
    return resp


@router.post("/signup")
async def signup(request: Request, session: SessionDep):
    """
    Register a new user with a hashed password, a profile and a role.
    """
    data = SignupData(**await _read_payload(request))

    existing = session.exec(select(User).where(User.email == data.email)).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(email=data.email, password_hash=hash_password(data.password))
    session.add(user)
    session.flush()

    if user.id is None:
        raise HTTPException(status_code=500, detail="User was not created successfully")

    session.add(
        Profile(
            id=user.id,
            email=data.email,
            first_name=data.first_name,
            last_name=data.last_name,
        )
    )
    session.add(Role(user_id=user.id, role=data.role))
    session.commit()

    logger.info("Registered user %s as %s", user.id, data.role)
    return _session_response(
        {"success": True, "message": "Registration successful", "role": data.role},
        user.id,
    )


@router.post("/login")
async def login(request: Request, session: SessionDep):
    """
    Log in with email + password and set a signed cookie.
    """
    payload = LoginData(**await _read_payload(request))

    user = session.exec(select(User).where(User.email == payload.email)).first()
    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid email or password")

    role = session.get(Role, user.id)
    if role is None:
        raise HTTPException(status_code=500, detail="Could not fetch user role")

    return _session_response(
        {"success": True, "message": "Login successful", "role": role.role},
        user.id,
    )


@router.post("/logout")
def logout():
    """
    Clear the session cookie.
    """
    response = JSONResponse({"success": True, "message": "Logged out"})
    response.delete_cookie(SESSION_COOKIE)
    return response


@router.get("/me")
def read_me(current: CurrentUserRoleDep):
    """
    Get info about the currently logged-in user + role.
    """
    user = current["user"]
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "delays": user.delays,
        "role": current["role"],
    }
