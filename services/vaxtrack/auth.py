"""Current-account oracle.

Account creation and credentials live outside this service; the engine only
ever sees an opaque account id, passed explicitly into every operation.
"""
import secrets
from datetime import datetime

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from services.vaxtrack.db import get_db
from services.vaxtrack.errors import NotAuthenticated
from services.vaxtrack.models import Account, AuthToken


security = HTTPBearer(auto_error=False)


def require_account(account_id: str | None) -> str:
    if not account_id:
        raise NotAuthenticated("User not authenticated")
    return account_id


def create_account(*, db: Session) -> Account:
    account = Account()
    db.add(account)
    db.flush()
    return account


def create_access_token(*, account_id: str, db: Session) -> str:
    """Creates an opaque bearer token stored in DB."""
    token = secrets.token_urlsafe(32)
    db.add(AuthToken(token=token, account_id=account_id))
    return token


def get_current_account(
    creds: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> Account:
    if creds is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    auth = db.get(AuthToken, creds.credentials)
    if not auth or auth.revoked_at is not None:
        raise HTTPException(status_code=401, detail="Invalid token")

    account = db.get(Account, auth.account_id)
    if not account:
        raise HTTPException(status_code=401, detail="Account not found")

    account.last_seen_at = datetime.utcnow()
    db.commit()
    return account
