"""
Shared pytest fixtures for the Roomflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - org / project: Pre-created organisation and project
    - bathroom / living_room: Rooms without stages or FFE instance
"""

import pytest

from roomflow import create_app
from roomflow.models import db as _db
from roomflow.models.org import Organization, Project, Room


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    o = Organization(name="Studio North", slug="studio-north")
    _db.session.add(o)
    _db.session.flush()
    return o


@pytest.fixture()
def project(org):
    p = Project(org_id=org.id, code="HARBOR", name="Harbor House")
    _db.session.add(p)
    _db.session.flush()
    return p


@pytest.fixture()
def bathroom(project):
    room = Room(project_id=project.id, type="MASTER_BATHROOM", name="Primary Bath")
    _db.session.add(room)
    _db.session.commit()
    return room


@pytest.fixture()
def living_room(project):
    room = Room(project_id=project.id, type="LIVING_ROOM", order=1)
    _db.session.add(room)
    _db.session.commit()
    return room
