import json
from typing import Any, Dict

import pytest
from kombu.exceptions import OperationalError

from registry_app.exchange import EXTENSION_KEY, ExchangeService, get_celery_app
from registry_app.exchange.celery_app import DEFAULT_QUEUE_NAME, build_celery_settings
from registry_app.exchange.service import EXPORT_TASK_NAME, IMPORT_TASK_NAME
from registry_app.exchange.storage import LocalBlobStorage
from registry_app.models import db

from .helpers import EAGER, RecordingCelery, build_csv, build_exchange_app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_exchange_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert {IMPORT_TASK_NAME, EXPORT_TASK_NAME, "exchange.healthcheck"} <= set(celery_app.tasks.keys())


def test_explicit_broker_and_json_config(tmp_path):
    app = build_exchange_app(
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG=json.dumps({"task_default_priority": 5}),
        EXCHANGE_TASK_TIME_LIMIT=120,
        INSTANCE_PATH=str(tmp_path),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "memory://"
    assert celery_app.conf.result_backend == "cache+memory://"
    assert celery_app.conf.task_default_priority == 5
    assert celery_app.conf.task_time_limit == 120


def test_malformed_celery_config_is_ignored(tmp_path):
    for raw in ("{not json", json.dumps([1, 2])):
        app = build_exchange_app(CELERY_CONFIG=raw, INSTANCE_PATH=str(tmp_path))
        settings = build_celery_settings(app)
        assert settings["task_acks_late"] is True
        assert settings["accept_content"] == ["json"]


def test_disabled_exchange_has_no_celery_app(tmp_path):
    app = build_exchange_app(EXCHANGE_ENABLED=False, INSTANCE_PATH=str(tmp_path))

    assert get_celery_app(app) is None
    assert app.extensions[EXTENSION_KEY]["enabled"] is False


def test_worker_ping_cli(tmp_path):
    app = build_exchange_app(
        EXCHANGE_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(tmp_path),
    )

    runner = app.test_cli_runner()
    result = runner.invoke(args=["exchange", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_exchange_app(
        EXCHANGE_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(tmp_path),
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "exchange",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "exports",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "exports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


@pytest.fixture
def queued_service(app, monkeypatch, organization, test_user):
    monkeypatch.setitem(app.config, "EXCHANGE_WORKER_ENABLED", True)
    return ExchangeService(organization.id, user_id=test_user.id, storage=LocalBlobStorage.from_app(app))


def test_import_is_queued_when_worker_enabled(queued_service, monkeypatch, standard_mapping):
    celery = RecordingCelery()
    monkeypatch.setattr("registry_app.exchange.service.get_celery_app", lambda app: celery)

    status = queued_service.submit_import(
        build_csv(["Nazwa", "NIP"], [["Acme", "5270103391"]]),
        "clients.csv",
        mapping=standard_mapping[:2],
    )

    assert status.status == "processing"
    assert status.processed == 0
    assert celery.sent == [(IMPORT_TASK_NAME, {"job_id": status.id})]


def test_enqueue_failure_fails_the_job(queued_service, monkeypatch):
    celery = RecordingCelery(error=OperationalError("broker unreachable"))
    monkeypatch.setattr("registry_app.exchange.service.get_celery_app", lambda app: celery)

    with pytest.raises(OperationalError):
        queued_service.start_export()

    jobs, total = queued_service.list_jobs()
    assert total == 1
    assert jobs[0].status == "failed"
    assert "Failed to enqueue job" in jobs[0].error_summary


def test_import_task_runs_queued_job(app, queued_service, monkeypatch, organization, standard_mapping):
    monkeypatch.setattr("registry_app.exchange.service.get_celery_app", lambda app: RecordingCelery())
    status = queued_service.submit_import(
        build_csv(["Nazwa", "NIP"], [["Acme", "5270103391"], ["Beta", "1234563218"]]),
        "clients.csv",
        mapping=standard_mapping[:2],
    )

    monkeypatch.setitem(app.config, "CELERY_CONFIG", EAGER)
    monkeypatch.setitem(app.extensions[EXTENSION_KEY], "celery_app", None)
    celery_app = get_celery_app(app)
    # The task runs in its own app context and session.
    db.session.close()
    summary = celery_app.tasks[IMPORT_TASK_NAME].apply(kwargs={"job_id": status.id}).get()

    assert summary["status"] == "completed"
    assert summary["created"] == 2
    assert queued_service.get_job_status(status.id).status == "completed"
