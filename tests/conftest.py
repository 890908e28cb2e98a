"""
Shared pytest fixtures for the caseflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - auth_headers: factory for Bearer headers carrying an actor and role
    - seeded: default REVIEW / FINDING / CAP workflows published
"""

import pytest

from caseflow import create_app
from caseflow.models import db as _db
from caseflow.services.graph_store import invalidate_cache


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
        invalidate_cache()
        yield
        invalidate_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def auth_headers(app):
    """Return a factory: ``auth_headers("u1", "ANSP_ADMIN")`` → request headers."""
    from caseflow.services.jwt_service import generate_access_token

    def _make(actor_id="admin-1", role="PLATFORM_ADMIN"):
        return {"Authorization": f"Bearer {generate_access_token(actor_id, role)}"}

    return _make


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def seeded():
    """Publish the default workflows and return the seed summary."""
    from caseflow.services.seeds import seed_default_workflows
    return seed_default_workflows()

