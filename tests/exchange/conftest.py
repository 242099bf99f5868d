from __future__ import annotations

import pytest

from registry_app.exchange.service import ExchangeService
from registry_app.exchange.storage import LocalBlobStorage

from .helpers import STANDARD_MAPPING, RecordingAuditSink


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def storage(app, tmp_path):
    return LocalBlobStorage(tmp_path / "blobs")


@pytest.fixture
def service(organization, test_user, storage, audit_sink):
    return ExchangeService(
        organization.id,
        user_id=test_user.id,
        storage=storage,
        audit_sink=audit_sink,
        inline=True,
    )


@pytest.fixture
def standard_mapping():
    return [dict(entry) for entry in STANDARD_MAPPING]
