import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class CurrentUser:
    id: int


@dataclass(frozen=True)
class RequestContext:
    """Who sent the request, for the payment audit trail."""

    ip: str | None = None
    user_agent: str | None = None
    origin: str | None = None


def verify_token(authorization: str | None = Header(None)) -> CurrentUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        user_id = claims.get("id") or claims.get("sub")
        return CurrentUser(id=int(user_id))
    except (ValueError, TypeError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def request_context(request: Request) -> RequestContext:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return RequestContext(
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        origin=request.headers.get("origin"),
    )
