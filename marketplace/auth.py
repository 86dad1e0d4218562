import logging

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.config import JWT_ALGORITHM, JWT_SECRET
from marketplace.database import get_db
from marketplace.models import User, UserRole

logger = logging.getLogger(__name__)


def _decode(authorization):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        if not claims.get("sub"):
            raise ValueError("token has no subject")
        return claims
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def _provision(db, claims):
    """First request from a new identity: create its user row from the token."""
    try:
        role = UserRole(str(claims.get("role", UserRole.STUDENT.value)).upper())
    except ValueError:
        role = UserRole.STUDENT
    user = User(
        id=claims["sub"],
        email=claims.get("email") or f"{claims['sub']}@users.invalid",
        first_name=claims.get("first_name", ""),
        last_name=claims.get("last_name", ""),
        role=role,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # provisioned by a parallel request
        db.rollback()
        return db.get(User, claims["sub"])
    logger.info("Provisioned user %s with role %s", user.id, role.value)
    return user


def get_current_user(authorization: str = Header(None), db: Session = Depends(get_db)):
    claims = _decode(authorization)
    user = db.get(User, claims["sub"])
    if user is None:
        user = _provision(db, claims)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return user


def get_optional_user(authorization: str = Header(None), db: Session = Depends(get_db)):
    if not authorization:
        return None
    return get_current_user(authorization, db)


def require_role(*roles):
    def checker(user: User = Depends(get_current_user)):
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return checker
