"""
Bearer-token authentication against the `api_tokens` table.

Tokens are opaque random strings handed out once by `issue_api_token`; only
their SHA-256 digest is stored. The authenticated user id is the sole source
of the acting identity: a `userId` sent in a request body is a hint that must
match it.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .database.connection import engine
from .database.models import ApiToken, utcnow
from .errors import AuthenticationError, IdentityMismatchError, PersistenceError

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_api_token(user_id: str, name: str = "default", db_engine: Engine = engine) -> str:
    """Creates a token for `user_id` and returns the plaintext exactly once."""
    if not user_id:
        raise AuthenticationError("A user id is required to issue a token.")
    token = secrets.token_urlsafe(32)
    with Session(db_engine) as session:
        session.add(ApiToken(user_id=user_id, token_hash=hash_token(token), name=name))
        session.commit()
    logger.info("Issued API token '%s' for user %s.", name, user_id)
    return token


def verify_api_token(token: Optional[str], db_engine: Engine = engine) -> Optional[str]:
    """Returns the user id owning `token`, or None when it is unknown."""
    if not token:
        return None
    digest = hash_token(token)
    try:
        with Session(db_engine) as session:
            record = session.exec(select(ApiToken).where(ApiToken.token_hash == digest)).first()
            if record is None or not hmac.compare_digest(record.token_hash, digest):
                return None
            record.last_used_at = utcnow()
            session.add(record)
            session.commit()
            return record.user_id
    except SQLAlchemyError as e:
        logger.error("Token lookup failed: %s", e)
        raise PersistenceError("Failed to verify credentials.", detail=str(e)) from e


def get_auth_engine() -> Engine:
    return engine


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    db_engine: Engine = Depends(get_auth_engine),
) -> str:
    """FastAPI dependency resolving the bearer token to the acting user id."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Authentication is required.")
    user_id = verify_api_token(credentials.credentials.strip(), db_engine)
    if user_id is None:
        raise AuthenticationError("Invalid token.")
    return user_id


def ensure_same_user(claimed_user_id: Optional[str], user_id: str) -> None:
    """Rejects a request whose body names a different user than the token."""
    if claimed_user_id and claimed_user_id != user_id:
        logger.warning("User %s sent a request on behalf of %s.", user_id, claimed_user_id)
        raise IdentityMismatchError("You can only act on your own account.")
