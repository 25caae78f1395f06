import argparse
import asyncio
import contextlib
import os
import signal
import sys
from asyncio import CancelledError
from typing import Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from dmarc_report_ingester.config import (
    DEFAULT_CONFIGURATION_FILE,
    Configuration,
    SchedulerConfig,
    load_configuration,
    read_configuration_file,
)
from dmarc_report_ingester.errors import (
    ConfigurationError,
    MailboxError,
    StorageError,
)
from dmarc_report_ingester.imap_client import ImapError
from dmarc_report_ingester.ingestion import ProcessingSummary, ReportIngestor
from dmarc_report_ingester.logging import configure_logging
from dmarc_report_ingester.mailbox import MailboxConnector
from dmarc_report_ingester.scheduler import Scheduler
from dmarc_report_ingester.storage import ReportStore

logger = structlog.get_logger()


def main(argv: Sequence[str]) -> int:
    parser = argparse.ArgumentParser(
        description="Fetch DMARC aggregate reports from an IMAP account and "
        "store the parsed reports in a database."
    )
    parser.add_argument(
        "--configuration",
        type=argparse.FileType("r"),
        default=DEFAULT_CONFIGURATION_FILE,
        help="Configuration file",
    )
    parser.add_argument(
        "--debug",
        default=False,
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--once",
        default=False,
        action="store_true",
        help="Run a single processing cycle, print a summary, and exit",
    )
    parser.add_argument(
        "--all",
        dest="include_read",
        default=False,
        action="store_true",
        help="Also process messages that are already marked as read",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of messages to process per cycle",
    )
    args = parser.parse_args(argv)
    if args.limit is not None and args.limit <= 0:
        parser.error("--limit must be positive")

    try:
        raw_configuration = read_configuration_file(args.configuration)
        configuration = load_configuration(raw_configuration, os.environ)
    except ConfigurationError as err:
        print(f"Invalid configuration: {err}", file=sys.stderr)
        return 2
    finally:
        args.configuration.close()

    configure_logging(configuration.logging, debug=args.debug)

    app = App.from_configuration(configuration)
    if args.once:
        return asyncio.run(
            run_single_cycle(app, include_read=args.include_read, limit=args.limit)
        )

    asyncio.run(run_until_signal(app))
    return 0


async def run_single_cycle(
    app: "App", *, include_read: bool = False, limit: Optional[int] = None
) -> int:
    try:
        summary = await app.run_once(include_read=include_read, limit=limit)
    except (
        MailboxError,
        ImapError,
        StorageError,
        SQLAlchemyError,
        asyncio.TimeoutError,
        OSError,
    ) as err:
        print(f"Processing failed: {err}", file=sys.stderr)
        return 1
    finally:
        await app.close()
    print("\n".join(summary.format_lines()))
    return 0


async def run_until_signal(app: "App"):
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, app.request_shutdown)
    await app.run()


class App:
    """Bootstrap wiring the mailbox, the ingestion cycle, and the schedule."""

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        *,
        ingestor: ReportIngestor,
        store: ReportStore,
        scheduler: Optional[SchedulerConfig] = None,
        shutdown_timeout_seconds: float = 30,
    ):
        self.ingestor = ingestor
        self.store = store
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        if scheduler is None:
            scheduler = SchedulerConfig()
        self.scheduler = Scheduler(
            self.run_once,
            interval_ms=scheduler.interval_ms,
            enabled=scheduler.enabled,
            is_busy=lambda: self.ingestor.busy,
        )
        self._initialized = False
        self._shutdown: Optional[asyncio.Event] = None
        self._log = logger.bind(logger=self.__class__.__name__)

    @classmethod
    def from_configuration(cls, configuration: Configuration) -> "App":
        store = ReportStore(configuration.database_url)
        mailbox = MailboxConnector(
            configuration.imap.to_connection_config(),
            folders=configuration.folders.to_mailbox_folders(),
            connect_timeout_seconds=configuration.connect_timeout_seconds,
        )
        return cls(
            ingestor=ReportIngestor(
                mailbox=mailbox,
                store=store,
                after_processing=configuration.after_processing,
                fetch_limit=configuration.fetch_limit,
            ),
            store=store,
            scheduler=configuration.scheduler,
        )

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.store.initialize()
            self._initialized = True

    async def run_once(
        self, include_read: bool = False, limit: Optional[int] = None
    ) -> ProcessingSummary:
        await self._ensure_initialized()
        summary = await self.ingestor.run_once(include_read=include_read, limit=limit)
        await self._log.ainfo(
            "Processing cycle finished.",
            processed=summary.processed,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        return summary

    def start_scheduled(self, interval_ms: Optional[int] = None):
        self.scheduler.start(interval_ms)

    async def stop_scheduled(self, timeout_seconds: Optional[float] = None):
        if timeout_seconds is None:
            timeout_seconds = self.shutdown_timeout_seconds
        await self.scheduler.stop(timeout_seconds)

    def request_shutdown(self):
        if self._shutdown is not None:
            self._shutdown.set()

    async def close(self):
        await self.store.close()

    async def run(self):
        self._shutdown = asyncio.Event()
        try:
            await self._ensure_initialized()
            try:
                await self.run_once()
            except Exception:  # pylint: disable=broad-except
                await self._log.aexception("Initial processing cycle failed.")

            if not self.scheduler.enabled:
                await self._log.ainfo("Scheduled processing disabled, exiting.")
                return
            self.start_scheduled()
            await self._shutdown.wait()
            await self._log.ainfo("Shutdown requested.")
        except CancelledError:
            pass
        finally:
            await self.stop_scheduled()
            await self.close()
            self._shutdown = None
