"""Shared fixtures: in-memory database, example revisable models, registry."""
from datetime import datetime

import pytest
from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import sessionmaker

from revisable_core.config import get_settings
from revisable_core.database import create_db_engine
from revisable_core.lifecycle import create_revision, release
from revisable_core.models import Base
from revisable_core.notifier import get_default_notifier
from revisable_core.registry import clear_registry, register_revisable
from revisable_core.revision_sets import get_payload


class ExampleModel(Base):
    """Revisable host entity without retroactive changes."""

    __tablename__ = "revisable_example_models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    example_value = Column(String(255))


class DeprecatableExampleModel(Base):
    """Revisable host entity with retroactive changes enabled."""

    __tablename__ = "revisable_deprecatable_example_models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    example_value = Column(String(255))


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def registered_models():
    clear_registry()
    register_revisable(ExampleModel)
    register_revisable(DeprecatableExampleModel, deprecatable=True)
    yield
    clear_registry()


@pytest.fixture(autouse=True)
def fresh_environment():
    get_settings.cache_clear()
    get_default_notifier().clear()
    yield
    get_settings.cache_clear()
    get_default_notifier().clear()


@pytest.fixture
def example_model():
    return ExampleModel


@pytest.fixture
def deprecatable_model():
    return DeprecatableExampleModel


@pytest.fixture
def make_revision(db):
    """Create a primary draft whose payload holds the given value."""

    def _make(value: str = "v1", model: type = DeprecatableExampleModel):
        return create_revision(db, model(example_value=value))

    return _make


@pytest.fixture
def release_history(db, make_revision):
    """Release one revision per given instant.

    The revision released at the n-th instant has payload value "v<n>".
    Returns (released revision infos in order, current primary draft).
    """

    def _build(*release_times: datetime, model: type = DeprecatableExampleModel):
        draft = make_revision("v1", model)
        released = []
        for number, released_at in enumerate(release_times, start=1):
            next_draft = release(db, draft, user_id=1, now=released_at)
            released.append(draft)
            get_payload(db, next_draft).example_value = f"v{number + 1}"
            db.commit()
            draft = next_draft
        return released, draft

    return _build
