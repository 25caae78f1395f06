import asyncio
import json
from dataclasses import dataclass, field
from unittest.mock import MagicMock

import pytest
import structlog
from sqlalchemy.exc import OperationalError

from dmarc_report_ingester.app import App, main, run_single_cycle
from dmarc_report_ingester.config import SchedulerConfig, load_configuration
from dmarc_report_ingester.errors import ConnectionExhausted, PersistenceFailure
from dmarc_report_ingester.ingestion import ProcessingSummary
from dmarc_report_ingester.logging import configure_logging
from dmarc_report_ingester.tests.sample_emails import (
    create_email_with_attachment,
    create_gzip_report,
)

from .conftest import MockImapServer, try_until_success


@pytest.fixture(autouse=True)
def configured_logging():
    # main() configures logging before running; mirror that so log output goes
    # to stderr instead of structlog's default stdout printer.
    configure_logging({}, debug=False)
    yield
    structlog.reset_defaults()


async def async_noop():
    pass


@dataclass
class AppMocks:
    ingestor: MagicMock = field(default_factory=MagicMock)
    store: MagicMock = field(default_factory=MagicMock)
    summary: ProcessingSummary = field(default_factory=ProcessingSummary)
    failure: Exception = None

    def __post_init__(self):
        async def run_once(**_):
            if self.failure is not None:
                raise self.failure
            return self.summary

        self.ingestor.busy = False
        self.ingestor.run_once.side_effect = run_once
        self.store.initialize.side_effect = async_noop
        self.store.close.side_effect = async_noop

    def create_app(self, **scheduler) -> App:
        return App(
            ingestor=self.ingestor,
            store=self.store,
            scheduler=SchedulerConfig(**scheduler),
            shutdown_timeout_seconds=1,
        )


@pytest.mark.asyncio
async def test_run_once_initializes_store_lazily():
    mocks = AppMocks()
    app = mocks.create_app()

    assert await app.run_once() is mocks.summary
    assert await app.run_once(include_read=True, limit=5) is mocks.summary

    mocks.store.initialize.assert_called_once()
    mocks.ingestor.run_once.assert_called_with(include_read=True, limit=5)


@pytest.mark.asyncio
async def test_runs_single_cycle_if_scheduling_is_disabled():
    mocks = AppMocks()
    app = mocks.create_app(enabled=False)

    await asyncio.wait_for(app.run(), 5)

    mocks.ingestor.run_once.assert_called_once()
    mocks.store.close.assert_called_once()
    assert not app.scheduler.running


@pytest.mark.asyncio
async def test_runs_scheduled_cycles_until_shutdown():
    mocks = AppMocks()
    app = mocks.create_app(interval_ms=20)
    main_task = asyncio.create_task(app.run())

    try:
        await try_until_success(
            lambda: assert_min_calls(mocks.ingestor.run_once, 3), timeout_seconds=2
        )
    finally:
        app.request_shutdown()
        await asyncio.wait_for(main_task, 5)

    assert not app.scheduler.running
    mocks.store.close.assert_called_once()


@pytest.mark.asyncio
async def test_initial_cycle_failure_does_not_prevent_scheduling():
    mocks = AppMocks(failure=ConnectionExhausted(3, OSError("unreachable")))
    app = mocks.create_app(interval_ms=20)
    main_task = asyncio.create_task(app.run())

    try:
        await try_until_success(
            lambda: assert_min_calls(mocks.ingestor.run_once, 2), timeout_seconds=2
        )
    finally:
        main_task.cancel()
        await main_task

    mocks.store.close.assert_called_once()


@pytest.mark.asyncio
async def test_cancelling_run_shuts_down_cleanly():
    mocks = AppMocks()
    app = mocks.create_app(interval_ms=60 * 1000)
    main_task = asyncio.create_task(app.run())

    try:
        await try_until_success(mocks.ingestor.run_once.assert_called_once)
    finally:
        main_task.cancel()
        await main_task

    mocks.store.close.assert_called_once()


def assert_min_calls(mock: MagicMock, count: int):
    assert mock.call_count >= count


@pytest.mark.asyncio
async def test_run_single_cycle_prints_summary(capsys):
    mocks = AppMocks()
    mocks.summary.processed = 2

    assert await run_single_cycle(mocks.create_app()) == 0

    assert capsys.readouterr().out.startswith("Processed: 2, skipped: 0, errors: 0")
    mocks.store.close.assert_called_once()


@pytest.mark.asyncio
async def test_run_single_cycle_fails_on_connection_error(capsys):
    mocks = AppMocks(failure=ConnectionExhausted(3, OSError("unreachable")))

    assert await run_single_cycle(mocks.create_app()) == 1

    assert "unreachable" in capsys.readouterr().err
    mocks.store.close.assert_called_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        OperationalError("CREATE TABLE", {}, Exception("unable to open database")),
        PersistenceFailure("unable to open database"),
    ],
)
async def test_run_single_cycle_fails_if_store_cannot_be_initialized(capsys, failure):
    mocks = AppMocks()
    mocks.store.initialize.side_effect = failure

    assert await run_single_cycle(mocks.create_app()) == 1

    captured = capsys.readouterr()
    assert captured.err.startswith("Processing failed: ")
    assert "unable to open database" in captured.err
    mocks.ingestor.run_once.assert_not_called()
    mocks.store.close.assert_called_once()


def test_app_uses_default_schedule():
    mocks = AppMocks()
    app = App(ingestor=mocks.ingestor, store=mocks.store)

    assert app.scheduler.enabled == SchedulerConfig().enabled
    assert app.scheduler.interval_ms == SchedulerConfig().interval_ms


@pytest.mark.asyncio
async def test_single_cycle_from_configuration(tmp_path, capsys):
    async with MockImapServer() as mock_server:
        mock_server.add_message(
            create_email_with_attachment(create_gzip_report()).as_bytes()
        )
        configuration = load_configuration(
            {
                "imap": {
                    "host": mock_server.host,
                    "port": mock_server.port,
                    "username": "username",
                    "password": "password",
                    "use_ssl": False,
                },
                "database_url": f"sqlite+aiosqlite:///{tmp_path / 'reports.db'}",
            }
        )
        exit_code = await run_single_cycle(App.from_configuration(configuration))

    assert exit_code == 0
    assert capsys.readouterr().out.startswith("Processed: 1, skipped: 0, errors: 0")
    assert rb"\Seen" in mock_server.inbox[0].flags


@pytest.fixture(name="clean_environment")
def fixture_clean_environment(monkeypatch):
    for env_var in ("IMAP_HOST", "IMAP_PORT", "IMAP_USER", "IMAP_PASSWORD"):
        monkeypatch.delenv(env_var, raising=False)


@pytest.mark.parametrize(
    "content",
    [
        "{invalid json",
        json.dumps({"imap": {"host": "localhost", "username": "user"}}),
        json.dumps({"imap": {"host": "localhost", "port": 0}}),
    ],
)
def test_main_exits_with_error_on_invalid_configuration(
    tmp_path, capsys, clean_environment, content
):
    # pylint: disable=unused-argument
    config_file = tmp_path / "config.json"
    config_file.write_text(content)

    assert main(["--configuration", str(config_file), "--once"]) == 2
    assert capsys.readouterr().err.startswith("Invalid configuration: ")


def test_main_rejects_non_positive_limit(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{}")

    with pytest.raises(SystemExit) as err:
        main(["--configuration", str(config_file), "--limit", "0"])
    assert err.value.code == 2
