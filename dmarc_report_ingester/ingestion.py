import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from dmarc_report_ingester.deserialization import decode_report
from dmarc_report_ingester.errors import (
    DuplicateReportId,
    MailboxError,
    NotConnected,
    ReportError,
    StorageError,
)
from dmarc_report_ingester.imap_client import ImapError
from dmarc_report_ingester.mailbox import Attachment, MailboxConnector, MailMessage
from dmarc_report_ingester.storage import (
    ProcessingStatus,
    ReportStore,
    StoredReport,
)

logger = structlog.get_logger()


class AfterProcessing(Enum):
    MARK_READ = "mark_read"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class ProcessingDetail:
    status: ProcessingStatus
    message: str
    report_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "report_id": self.report_id,
        }


@dataclass
class ProcessingSummary:
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    details: List[ProcessingDetail] = field(default_factory=list)

    def add(self, detail: ProcessingDetail):
        if detail.status == ProcessingStatus.SUCCESS:
            self.processed += 1
        elif detail.status == ProcessingStatus.SKIPPED:
            self.skipped += 1
        elif detail.status == ProcessingStatus.ERROR:
            self.errors += 1
        self.details.append(detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "skipped": self.skipped,
            "details": [detail.to_dict() for detail in self.details],
        }

    def format_lines(self) -> List[str]:
        lines = [
            f"Processed: {self.processed}, "
            f"skipped: {self.skipped}, errors: {self.errors}"
        ]
        lines.extend(
            f"  [{detail.status.value}] {detail.message}" for detail in self.details
        )
        return lines


class ReportIngestor:
    """Runs ingestion cycles: fetch report emails, decode, and store them.

    Only one cycle runs at a time. Errors concerning a single attachment are
    recorded in the summary and do not stop the cycle. Connection errors
    abort the cycle and are raised with the (empty) summary attached as
    ``summary`` attribute.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        *,
        mailbox: MailboxConnector,
        store: ReportStore,
        after_processing: AfterProcessing = AfterProcessing.MARK_READ,
        fetch_limit: Optional[int] = None,
        now: Callable[[], float] = time.time,
    ):
        self.mailbox = mailbox
        self.store = store
        self.after_processing = after_processing
        self.fetch_limit = fetch_limit
        self._now = now
        self._lock = asyncio.Lock()
        self._log = logger.bind(logger=self.__class__.__name__)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run_once(
        self, include_read: bool = False, limit: Optional[int] = None
    ) -> ProcessingSummary:
        async with self._lock:
            return await self._run_cycle(include_read, limit or self.fetch_limit)

    async def _run_cycle(
        self, include_read: bool, limit: Optional[int]
    ) -> ProcessingSummary:
        summary = ProcessingSummary()
        await self._log.ainfo(
            "Starting ingestion cycle.", include_read=include_read, limit=limit
        )
        try:
            try:
                await self.mailbox.connect_with_retry()
                messages = await self.mailbox.fetch_messages(
                    include_read=include_read, limit=limit
                )
            except (MailboxError, ImapError, asyncio.TimeoutError, OSError) as err:
                await self._log.aerror("Ingestion cycle aborted.", error=str(err))
                setattr(err, "summary", summary)
                raise

            handled_uids = []
            for message in messages:
                if await self._process_message(message, summary):
                    handled_uids.append(message.uid)

            await self._finish_messages(handled_uids)
        finally:
            await self.mailbox.disconnect()

        await self._log.ainfo("Finished ingestion cycle.", **summary.to_dict())
        return summary

    async def _process_message(
        self, message: MailMessage, summary: ProcessingSummary
    ) -> bool:
        log = self._log.bind(uid=message.uid, subject=message.subject)
        await log.adebug(
            "Processing message.", num_attachments=len(message.attachments)
        )
        all_handled = True
        for attachment in message.attachments:
            detail = await self._process_attachment(message, attachment)
            summary.add(detail)
            if detail.status == ProcessingStatus.ERROR:
                all_handled = False
        return all_handled

    async def _process_attachment(
        self, message: MailMessage, attachment: Attachment
    ) -> ProcessingDetail:
        log = self._log.bind(uid=message.uid, attachment=attachment.filename)
        await self._append_log_entry(message, attachment, ProcessingStatus.STARTED)

        report: Optional[StoredReport] = None
        report_id: Optional[str] = None
        try:
            parsed = decode_report(attachment.content, now=self._now)
            report_id = parsed.report.report_id
            if await self.store.find_report_by_report_id(report_id) is not None:
                detail = ProcessingDetail(
                    ProcessingStatus.SKIPPED,
                    f"Report {report_id} already exists.",
                    report_id,
                )
            else:
                report = await self.store.create_report_with_records(
                    parsed.report, parsed.records
                )
                detail = ProcessingDetail(
                    ProcessingStatus.SUCCESS,
                    f"Stored report {report_id} for {parsed.report.domain} "
                    f"with {len(parsed.records)} records "
                    f"({parsed.total_messages} messages).",
                    report_id,
                )
        except DuplicateReportId as err:
            detail = ProcessingDetail(ProcessingStatus.SKIPPED, str(err), report_id)
        except (ReportError, StorageError) as err:
            detail = ProcessingDetail(
                ProcessingStatus.ERROR,
                f"{attachment.filename}: {err}",
                report_id,
            )
        except Exception as err:  # pylint: disable=broad-except
            await log.aexception("Unexpected error while processing attachment.")
            detail = ProcessingDetail(
                ProcessingStatus.ERROR,
                f"{attachment.filename}: unexpected error: {err!r}",
                report_id,
            )

        if detail.status == ProcessingStatus.ERROR:
            await log.awarning("Failed to process attachment.", error=detail.message)
        else:
            await log.ainfo(
                "Processed attachment.",
                status=detail.status.value,
                report_id=report_id,
            )
        await self._append_log_entry(
            message, attachment, detail.status, detail.message, report
        )
        return detail

    # pylint: disable=too-many-arguments
    async def _append_log_entry(
        self,
        message: MailMessage,
        attachment: Attachment,
        status: ProcessingStatus,
        details: Optional[str] = None,
        report: Optional[StoredReport] = None,
    ):
        try:
            await self.store.create_processing_log_entry(
                status=status,
                message_uid=message.uid,
                attachment_name=attachment.filename,
                details=details,
                report=report,
            )
        except StorageError:
            await self._log.aexception(
                "Failed to write processing log entry.", uid=message.uid
            )

    async def _finish_messages(self, uids: Sequence[int]):
        if not uids:
            return
        if not self.mailbox.is_connected:
            await self._log.awarning(
                "Mailbox connection lost, leaving messages unchanged.",
                count=len(uids),
            )
            return
        try:
            if self.after_processing == AfterProcessing.ARCHIVE:
                await self.mailbox.move_messages_to_archive(uids)
            else:
                await self.mailbox.mark_messages_read(uids)
        except (NotConnected, ImapError, asyncio.TimeoutError, OSError) as err:
            await self._log.awarning(
                "Failed to update processed messages.",
                error=str(err),
                after_processing=self.after_processing.value,
            )
