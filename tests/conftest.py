"""
Shared pytest fixtures for the GRC Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: Pre-created Organization
    - members: one ActorContext per member role in ``org``
    - make_member / make_control: factories for extra rows
"""

import pytest

from grc import create_app
from grc.core.actor import ActorContext
from grc.models import db as _db
from grc.models.auth import (
    ROLE_ADMIN, ROLE_AUDITOR, ROLE_LOCAL_ADMIN, ROLE_USER, ROLE_VIEWER,
    Organization, OrganizationMember, User,
)
from grc.models.soa import Control


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


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Domain factories ─────────────────────────────────────────────────────

_user_seq = {"n": 0}


def _create_user(org=None, member_role=None, *, global_role=ROLE_USER, designation=None, first_name="Test"):
    _user_seq["n"] += 1
    n = _user_seq["n"]
    user = User(
        email=f"user{n}@grc.test", first_name=first_name, last_name=f"User{n}",
        designation=designation, role=global_role,
    )
    _db.session.add(user)
    _db.session.flush()
    if org is not None and member_role is not None:
        _db.session.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=member_role))
    _db.session.commit()
    return user


def actor_for(user):
    """Fresh ActorContext; memberships are read from the database."""
    _db.session.refresh(user)
    return ActorContext.for_user(user)


@pytest.fixture()
def org():
    o = Organization(name="Acme Security", slug="acme")
    _db.session.add(o)
    _db.session.commit()
    return o


@pytest.fixture()
def other_org():
    o = Organization(name="Other Corp", slug="other")
    _db.session.add(o)
    _db.session.commit()
    return o


@pytest.fixture()
def make_member(org):
    """Factory: make_member(role, target_org=None, **kw) -> ActorContext."""

    def _make(member_role=ROLE_USER, target_org=None, **kw):
        user = _create_user(target_org or org, member_role, **kw)
        return actor_for(user)

    return _make


@pytest.fixture()
def members(make_member):
    """One actor per member role, plus an outsider and a global admin."""
    return {
        "admin": make_member(ROLE_ADMIN, designation="CISO"),
        "local_admin": make_member(ROLE_LOCAL_ADMIN),
        "auditor": make_member(ROLE_AUDITOR),
        "user": make_member(ROLE_USER, designation="Risk Analyst"),
        "viewer": make_member(ROLE_VIEWER),
        "outsider": actor_for(_create_user()),
        "global_admin": actor_for(_create_user(global_role=ROLE_ADMIN)),
    }


@pytest.fixture()
def make_control(org):
    def _make(control_id="A.5.1", name="Policies for information security", target_org=None):
        control = Control(
            organization_id=(target_org or org).id, control_id=control_id, name=name,
            category="A5_ORGANIZATIONAL",
        )
        _db.session.add(control)
        _db.session.commit()
        return control

    return _make
