"""
Pytest configuration and fixtures
"""
import os

# 모듈 import 전에 설정해야 함
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TRAINER_ID"] = "trainer"
os.environ["MM_TOKEN"] = "test-token"
os.environ["API_TOKEN"] = "test-api-token"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from zoobot.db import SessionLocal, engine, get_db
from zoobot.models import Base


@pytest.fixture(scope="function")
def db() -> Session:
    """Fresh schema per test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(db: Session):
    """Test client sharing the test session"""
    from zoobot.main import app

    app.dependency_overrides[get_db] = lambda: db
    try:
        test_client = TestClient(app)
        test_client.headers["X-API-Token"] = "test-api-token"
        yield test_client
    finally:
        app.dependency_overrides.clear()
