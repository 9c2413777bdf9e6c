from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, SignatureExpired
from passlib.context import CryptContext
from sqlmodel import Session, select

from .config import ACCESS_TOKEN_MAX_AGE
from .db import get_session
from .models import User
from .utils import make_token, read_token

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def authenticate(session: Session, email: str, password: str) -> Optional[User]:
    user = session.exec(select(User).where(User.email == email)).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def issue_access_token(user: User) -> str:
    return make_token({"user_id": user.id})


def _user_from_credentials(credentials: Optional[HTTPAuthorizationCredentials], session: Session) -> Optional[User]:
    if credentials is None or not credentials.credentials:
        return None
    try:
        data = read_token(credentials.credentials, max_age=ACCESS_TOKEN_MAX_AGE)
    except SignatureExpired:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except BadSignature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = session.get(User, data.get("user_id"))
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    session: Session = Depends(get_session),
) -> User:
    user = _user_from_credentials(credentials, session)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    session: Session = Depends(get_session),
) -> Optional[User]:
    return _user_from_credentials(credentials, session)


def recipient_token(
    x_recipient_token: Optional[str] = Header(default=None, alias="X-Recipient-Token"),
    token: Optional[str] = Query(default=None),
) -> Optional[str]:
    return x_recipient_token or token
