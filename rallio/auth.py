# rallio/auth.py
"""
Bearer-token authentication. Tokens are issued by the account service; this API
only verifies them. The `sub` claim carries the user id.
"""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from rallio.core.config import ACCESS_TOKEN_EXPIRE_MINUTES, SECRET_KEY
from rallio.database import models
from rallio.database.database import get_db
from rallio.errors import NotAuthenticated, PolicyViolation

# =====================================
# ✅ Configurations
# =====================================
ALGORITHM = "HS256"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


# =====================================
# ✅ JWT Helpers
# =====================================
def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    """Create a new JWT access token."""
    to_encode = data.copy()
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and verify a JWT token."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise NotAuthenticated("Invalid or expired token")


# =====================================
# ✅ Current User Fetcher
# =====================================
def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """Return the user named by the bearer token."""
    if not token:
        raise NotAuthenticated()

    payload = decode_access_token(token)
    subject = payload.get("sub")
    if subject is None or not str(subject).isdigit():
        raise NotAuthenticated("Invalid credentials")

    user = db.query(models.User).filter(models.User.id == int(subject)).first()
    if not user:
        raise NotAuthenticated("User not found")
    return user


# =====================================
# ✅ Role-based Access Control
# =====================================
def require_role(required_role: str):
    """Dependency to restrict access to users with a given role."""
    def checker(current_user: models.User = Depends(get_current_user)):
        if current_user.role != required_role:
            raise PolicyViolation(f"Access forbidden: {required_role} role required")
        return current_user
    return checker


def get_optional_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Optional[models.User]:
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    if not token:
        return None
    return get_current_user(token=token, db=db)
