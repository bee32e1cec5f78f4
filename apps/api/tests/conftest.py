from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from fichamento.config import get_settings
from fichamento.db import Base, get_engine
from fichamento.main import app
from fichamento.models import BookRecord


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    app.dependency_overrides.clear()


@pytest.fixture
def database(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    sqlite_db_path = tmp_path / "api-tests.db"
    monkeypatch.setenv("API_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("API_DB_ECHO", "false")

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


@pytest.fixture
def client(database: None) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seed_book(database: None) -> Callable[..., str]:
    def _seed(
        book_id: str = "b1",
        *,
        title: str = "Meditações",
        author: str = "Marco Aurélio",
        subject: str | None = "Filosofia",
    ) -> str:
        with Session(get_engine()) as session:
            session.add(BookRecord(id=book_id, title=title, author=author, subject=subject))
            session.commit()
        return book_id

    return _seed
