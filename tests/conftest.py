"""
Pytest configuration and fixtures for the import pipeline tests.

Every test gets its own in-memory SQLite database. ``StaticPool`` keeps a
single connection so the sessions opened by stage handlers see the same
data as the test, and the inline task queue runs every stage synchronously.
"""

import os

# Tests never touch the configured DATABASE_URL.
os.environ["SKIP_DB_INIT"] = "1"

import pandas as pd
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Dataset, User, create_tables
from app.domain.imports.dataset_detection import register_import_file
from app.domain.imports.geocoding import StaticGeocoder
from app.domain.imports.pipeline import build_pipeline
from app.domain.imports.tasks import InlineTaskQueue

AUTO_APPROVE = {"auto_approve_non_breaking": True}


@pytest.fixture
def test_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def geocoder():
    return StaticGeocoder({"Paris": (48.8566, 2.3522), "Berlin, Germany": (52.52, 13.405)})


@pytest.fixture
def make_pipeline(session_factory):
    """Build a pipeline bound to the test database; keyword args override batch sizes."""

    def _make(geocoder=None, **overrides):
        return build_pipeline(session_factory, queue=InlineTaskQueue(), geocoder=geocoder, **overrides)

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def write_csv(tmp_path):
    def _write(name, rows, columns=None):
        path = tmp_path / name
        pd.DataFrame(rows, columns=columns).to_csv(path, index=False)
        return str(path)

    return _write


@pytest.fixture
def write_xlsx(tmp_path):
    """Write ``{sheet_name: rows}`` to a workbook, preserving sheet order."""

    def _write(name, sheets):
        path = tmp_path / name
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            for sheet_name, rows in sheets.items():
                pd.DataFrame(rows).to_excel(writer, sheet_name=sheet_name, index=False)
        return str(path)

    return _write


@pytest.fixture
def make_dataset(session_factory):
    def _make(name="Events", **config):
        with session_factory() as session:
            dataset = Dataset(
                name=name,
                owner_id=config.get("owner_id"),
                id_strategy=config.get("id_strategy", {"type": "auto"}),
                deduplication_config=config.get("deduplication_config", {"enabled": True, "strategy": "skip"}),
                schema_config=config.get("schema_config", dict(AUTO_APPROVE)),
                transforms=config.get("transforms", []),
                field_mapping_overrides=config.get("field_mapping_overrides", {}),
            )
            session.add(dataset)
            session.commit()
            return dataset.id

    return _make


@pytest.fixture
def make_user(session_factory):
    def _make(email="importer@example.com", trust_level=2, quota_overrides=None):
        with session_factory() as session:
            user = User(email=email, trust_level=trust_level, quota_overrides=quota_overrides or {})
            session.add(user)
            session.commit()
            return user.id

    return _make


@pytest.fixture
def run_import(session_factory, pipeline):
    """Register ``path`` and drain the queue; returns the import file id."""

    def _run(path, context=None, **processing_options):
        context = context or pipeline
        owner_id = processing_options.pop("owner_id", None)
        with session_factory() as session:
            import_file = register_import_file(
                session,
                context,
                original_name=os.path.basename(path),
                storage_path=path,
                owner_id=owner_id,
                processing_options=processing_options,
            )
            file_id = import_file.id
        context.queue.run_until_empty()
        return file_id

    return _run

