import os

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from signify.main import app  # noqa: E402
from signify import db as db_module  # noqa: E402
from signify.db import get_session  # noqa: E402
from signify import email as email_module  # noqa: E402


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def db_session(test_engine, setup_db):
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, html_body=None, sender_name=None, reply_to=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": body,
                "html": html_body,
                "sender_name": sender_name,
                "reply_to": reply_to,
            }
        )

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def client(test_engine, setup_db, sent_emails):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
