
from sqlmodel import SQLModel, create_engine, Session
from .config import DATABASE_URL


def _engine_for(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)


engine = _engine_for(DATABASE_URL)


def init_db():
    from .models import User, Signature, Document, DocumentRecipient, DocumentTool, ToolAssignment, Activity
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
