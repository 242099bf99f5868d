# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py loads TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as registry_flask_app  # noqa: E402
from registry_app.models import Client, ClientStatus, ClientType, Organization, Tag, User, db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    registry_flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "DEBUG",
            "EXCHANGE_ENABLED": True,
            "EXCHANGE_WORKER_ENABLED": False,
            "EXCHANGE_BATCH_SIZE": 100,
            "EXCHANGE_ARTIFACT_DIR": str(tmp_path / "exchange_artifacts"),
            "EXCHANGE_DEFAULT_ENCODING": "utf-8-sig",
            "EXCHANGE_DUPLICATE_KEY_FIELD": "tax_id",
            "EXCHANGE_BULK_MAX_TARGETS": 100,
            "EXCHANGE_BULK_MAX_HARD_DELETE": 50,
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
        }
    )

    with registry_flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield registry_flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def organization():
    org = Organization(name="Acme Sp. z o.o.", slug="acme")
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def other_organization():
    org = Organization(name="Globex S.A.", slug="globex")
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def test_user(organization):
    user = User(
        username="operator",
        email="operator@example.com",
        first_name="Olga",
        last_name="Operator",
        organization_id=organization.id,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def manager_user(organization):
    user = User(
        username="manager",
        email="manager@example.com",
        first_name="Marek",
        last_name="Manager",
        organization_id=organization.id,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def make_client(organization):
    """Factory creating committed clients for the default organization."""

    def _make(name, *, tax_id=None, organization_id=None, **fields):
        client = Client(
            organization_id=organization_id or organization.id,
            client_type=fields.pop("client_type", ClientType.COMPANY),
            company_name=name,
            display_name=name,
            tax_id=tax_id,
            status=fields.pop("status", ClientStatus.ACTIVE),
            country=fields.pop("country", "PL"),
            **fields,
        )
        db.session.add(client)
        db.session.commit()
        return client

    return _make


@pytest.fixture
def make_tag(organization):
    def _make(name, *, organization_id=None):
        tag = Tag(organization_id=organization_id or organization.id, name=name)
        db.session.add(tag)
        db.session.commit()
        return tag

    return _make
