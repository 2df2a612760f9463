"""
Caller identity for route handlers.

A request is authenticated either by a connect key (``X-Connect-Key`` or
``Authorization: Connect <key>``) or by a Supabase session token. Issuing a
new connect key requires the session token.
"""
import logging
import os
import re
from datetime import timedelta
from typing import Optional

from fastapi import BackgroundTasks, Depends, HTTPException, Request
from supabase import Client

from .connect_keys import ConnectKeyService, DEFAULT_TTL, extract_connect_key
from .database import SB
from .health import metrics_collector
from .key_store import SupabaseKeyStore
from .logging_config import DatabaseError, InvalidFormat, Unauthenticated, log_error
from .schemas import CurrentUser

logger = logging.getLogger(__name__)

# Agents paste headers in odd shapes ("Bearer x.y.z", "x.y.z", "token is x.y.z thanks")
JWT_PATTERN = re.compile(r"[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+")


def connect_key_ttl() -> timedelta:
    minutes = os.environ.get("CONNECT_KEY_TTL_MINUTES")
    if not minutes:
        return DEFAULT_TTL
    try:
        ttl = timedelta(minutes=float(minutes))
    except ValueError:
        logger.warning(f"Ignoring invalid CONNECT_KEY_TTL_MINUTES={minutes!r}")
        return DEFAULT_TTL
    return ttl if ttl > timedelta(0) else DEFAULT_TTL


async def get_db() -> Client:
    try:
        return await SB.client()
    except DatabaseError as e:
        log_error(logger, e)
        raise HTTPException(status_code=503, detail="Database unavailable")


def get_key_service(db: Client = Depends(get_db)) -> ConnectKeyService:
    return ConnectKeyService(SupabaseKeyStore(db))


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    candidate = re.sub(r"^Bearer\s+", "", authorization.strip(), flags=re.IGNORECASE)
    match = JWT_PATTERN.search(candidate)
    return match.group(0) if match else None


def resolve_connect_key(request: Request, keys: ConnectKeyService,
                        background_tasks: Optional[BackgroundTasks] = None) -> Optional[CurrentUser]:
    """CurrentUser for a presented connect key, None when the request carries no key"""
    raw_key = extract_connect_key(request.headers)
    if raw_key is None:
        return None

    try:
        verified = keys.verify(raw_key, defer=background_tasks.add_task if background_tasks else None)
    except InvalidFormat as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Unauthenticated as e:
        metrics_collector.record_key_rejected(e.reason)
        # Same response for unknown, revoked and expired keys
        raise HTTPException(status_code=401, detail=Unauthenticated.GENERIC_MESSAGE)
    except DatabaseError as e:
        log_error(logger, e, {"endpoint": request.url.path})
        raise HTTPException(status_code=503, detail="Authentication temporarily unavailable")

    request.state.connect_key_expires_at = verified.expires_at
    return CurrentUser(id=verified.owner_user_id, auth_via="connect_key")


def resolve_bearer(authorization: Optional[str], db: Client) -> CurrentUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid token format")

    try:
        response = db.auth.get_user(token)
    except Exception as e:
        logger.warning(f"Supabase token validation failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    metadata = getattr(user, "user_metadata", None) or {}
    email = getattr(user, "email", None) or metadata.get("email")
    return CurrentUser(id=str(user.id), email=email, auth_via="bearer")


def get_current_user(request: Request, background_tasks: BackgroundTasks,
                     db: Client = Depends(get_db),
                     keys: ConnectKeyService = Depends(get_key_service)) -> CurrentUser:
    user = resolve_connect_key(request, keys, background_tasks)
    if user is None:
        user = resolve_bearer(request.headers.get("Authorization"), db)
    request.state.user_id = user.id
    return user


def get_session_user(request: Request, db: Client = Depends(get_db)) -> CurrentUser:
    """Session token only; a connect key cannot mint further connect keys"""
    user = resolve_bearer(request.headers.get("Authorization"), db)
    request.state.user_id = user.id
    return user
