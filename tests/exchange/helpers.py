"""Shared builders and fakes for the exchange tests."""

from __future__ import annotations

import csv
import io
from types import SimpleNamespace

from flask import Flask

from registry_app.exchange import init_exchange

STANDARD_MAPPING = [
    {"source_column": "Nazwa", "target_field": "company_name", "required": True},
    {"source_column": "NIP", "target_field": "tax_id", "transformation": "strip_formatting"},
    {"source_column": "Email", "target_field": "email", "transformation": "lowercase"},
    {"source_column": "Kod", "target_field": "postal_code"},
    {"source_column": "Miasto", "target_field": "city"},
]

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


class RecordingAuditSink:
    """Collects audit events in memory for assertions."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    @property
    def actions(self):
        return [event.action for event in self.events]


class FailingAuditSink:
    def emit(self, event):
        raise RuntimeError("audit backend unavailable")


class RecordingCelery:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def send_task(self, name, kwargs=None):
        if self.error is not None:
            raise self.error
        self.sent.append((name, kwargs))
        return SimpleNamespace(id=f"task-{len(self.sent)}")


def build_csv(header, rows, *, delimiter=",", bom=False) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8-sig" if bom else "utf-8")


def build_exchange_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the exchange enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        EXCHANGE_ENABLED=True,
    )
    app.config.update(overrides)
    init_exchange(app)
    return app
