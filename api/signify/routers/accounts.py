import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from ..activity import record_activity
from ..auth import authenticate, hash_password, issue_access_token
from ..db import get_session
from ..errors import Conflict
from ..models import User
from ..schemas import LoginRequest, UserCreate
from ..serializers import serialize_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(data: UserCreate, session: Session = Depends(get_session)):
    existing = session.exec(select(User).where(User.email == data.email)).first()
    if existing:
        raise Conflict("email already registered")
    user = User(
        first_name=data.first_name.strip(),
        last_name=data.last_name.strip(),
        address=data.address,
        email=data.email,
        password_hash=hash_password(data.password),
    )
    session.add(user)
    session.flush()
    record_activity(session, user.id, "account_created", "Account created", f"Welcome, {user.full_name}")
    session.commit()
    session.refresh(user)
    logger.info("user %s registered", user.id)
    return {"user": serialize_user(user), "access_token": issue_access_token(user), "token_type": "bearer"}


@router.post("/login")
def login(data: LoginRequest, session: Session = Depends(get_session)):
    user = authenticate(session, data.email, data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"user": serialize_user(user), "access_token": issue_access_token(user), "token_type": "bearer"}
