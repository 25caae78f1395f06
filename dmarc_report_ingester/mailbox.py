import asyncio
import contextlib
import email.policy
import os.path
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.parser import BytesParser
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    cast,
)

import structlog

from dmarc_report_ingester.errors import (
    ConnectionExhausted,
    ConnectionTimeout,
    NotConnected,
)
from dmarc_report_ingester.imap_client import (
    ConnectionConfig,
    ConnectionState,
    ImapClient,
    ImapError,
)

logger = structlog.get_logger()

DEFAULT_FETCH_LIMIT = 50
REPORT_FILENAME_MARKER = "dmarc"
REPORT_FILE_EXTENSIONS = (".xml", ".gz", ".zip")
REPORT_CONTENT_TYPE_MARKERS = ("xml", "zip", "gzip")


@dataclass(frozen=True)
class Attachment:
    filename: str
    content_type: str
    content: bytes


@dataclass
class MailMessage:
    uid: int
    subject: str
    sender: str
    date: Optional[datetime]
    attachments: List[Attachment] = field(default_factory=list)


AttachmentPredicate = Callable[[str, str], bool]


def looks_like_dmarc_report(filename: str, content_type: str) -> bool:
    filename = filename.lower()
    content_type = content_type.lower()
    return (
        REPORT_FILENAME_MARKER in filename
        or os.path.splitext(filename)[1] in REPORT_FILE_EXTENSIONS
        or any(marker in content_type for marker in REPORT_CONTENT_TYPE_MARKERS)
    )


@dataclass
class MailboxFolders:
    inbox: str = "INBOX"
    archive: str = "Archive"


def parse_mail_message(
    uid: int,
    raw: bytes,
    is_report_attachment: AttachmentPredicate = looks_like_dmarc_report,
) -> MailMessage:
    msg = cast(
        EmailMessage, BytesParser(policy=email.policy.default).parsebytes(bytes(raw))
    )
    attachments = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename() or ""
        content_type = part.get_content_type()
        if not filename and part.get_content_maintype() == "text" and part is not msg:
            continue
        if is_report_attachment(filename, content_type):
            attachments.append(
                Attachment(
                    filename=filename or "unknown",
                    content_type=content_type,
                    content=part.get_payload(decode=True) or b"",
                )
            )

    date_header = msg.get("date")
    date = getattr(date_header, "datetime", None) if date_header else None
    return MailMessage(
        uid=uid,
        subject=str(msg.get("subject", "")),
        sender=str(msg.get("from", "")),
        date=date,
        attachments=attachments,
    )


# pylint: disable=too-many-instance-attributes
class MailboxConnector:
    """Stateful connection to the mailbox that DMARC reports are delivered to.

    The connector moves through the states ``DISCONNECTED -> CONNECTING ->
    READY -> DISCONNECTED``. The last transition happens either on
    :meth:`disconnect` or when the server drops the connection. Operations
    requiring a connection raise :class:`NotConnected` in any state but
    ``READY``.

    Not safe for concurrent use: callers must not interleave fetch, flag and
    move operations.
    """

    MAX_CONNECT_ATTEMPTS = 3

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        connection: ConnectionConfig,
        *,
        folders: Optional[MailboxFolders] = None,
        connect_timeout_seconds: float = 10,
        command_timeout_seconds: float = 60,
        retry_base_delay_seconds: float = 1,
        keepalive_interval_seconds: float = 10,
        is_report_attachment: AttachmentPredicate = looks_like_dmarc_report,
        client_factory: Callable[[ConnectionConfig, float], Any] = ImapClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.connection = connection
        self.folders = folders if folders is not None else MailboxFolders()
        self.connect_timeout_seconds = connect_timeout_seconds
        self.command_timeout_seconds = command_timeout_seconds
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.keepalive_interval_seconds = keepalive_interval_seconds
        self.is_report_attachment = is_report_attachment
        self.retry_count = 0
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[ImapClient] = None
        self._connecting = False
        self._archive_verified = False
        self._keepalive_task: Optional[asyncio.Task] = None
        self._log = logger.bind(
            logger=self.__class__.__name__,
            host=connection.host,
            port=connection.port,
        )

    @property
    def state(self) -> ConnectionState:
        if self._connecting:
            return ConnectionState.CONNECTING
        if self._client is None:
            return ConnectionState.DISCONNECTED
        return self._client.state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.READY

    async def connect(self):
        if self.is_connected:
            return
        if self._client is not None:
            await self._discard_client()

        client = self._client_factory(self.connection, self.command_timeout_seconds)
        self._connecting = True
        try:
            await asyncio.wait_for(client.open(), self.connect_timeout_seconds)
        except asyncio.TimeoutError as err:
            raise ConnectionTimeout(
                self.connection.host,
                self.connection.port,
                self.connect_timeout_seconds,
            ) from err
        finally:
            self._connecting = False
        self._client = client
        self.retry_count = 0
        await self._log.ainfo("Mailbox connection ready.")
        if self.keepalive_interval_seconds > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive(client))

    async def connect_with_retry(self):
        last_error: Optional[BaseException] = None
        self.retry_count = 0
        while self.retry_count < self.MAX_CONNECT_ATTEMPTS:
            try:
                await self.connect()
                return
            except (
                OSError,
                asyncio.TimeoutError,
                ImapError,
                ConnectionTimeout,
                NotConnected,
            ) as err:
                last_error = err
                self.retry_count += 1
                if self.retry_count >= self.MAX_CONNECT_ATTEMPTS:
                    break
                delay = self.retry_base_delay_seconds * 2 ** (self.retry_count - 1)
                await self._log.awarning(
                    "Mailbox connection attempt failed, retrying.",
                    attempt=self.retry_count,
                    retry_in_seconds=delay,
                    error=str(err),
                )
                await self._sleep(delay)
        assert last_error is not None
        await self._log.aerror(
            "Giving up on mailbox connection.", attempts=self.retry_count
        )
        raise ConnectionExhausted(self.retry_count, last_error) from last_error

    async def disconnect(self):
        if self._client is None:
            return
        await self._discard_client()
        await self._log.ainfo("Mailbox disconnected.")

    async def _discard_client(self):
        client, self._client = self._client, None
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._keepalive_task
            self._keepalive_task = None
        if client is not None:
            try:
                await client.close()
            except OSError as err:
                await self._log.awarning(
                    "Error while closing mailbox connection.", error=str(err)
                )

    async def _keepalive(self, client: ImapClient):
        while client.state == ConnectionState.READY:
            await asyncio.sleep(self.keepalive_interval_seconds)
            try:
                await client.noop()
            except (ImapError, NotConnected, asyncio.TimeoutError, OSError) as err:
                await self._log.awarning("Keepalive failed.", error=str(err))
                return

    def _require_client(self) -> ImapClient:
        if self._client is None or not self.is_connected:
            raise NotConnected()
        return self._client

    async def fetch_messages(
        self, include_read: bool = False, limit: Optional[int] = None
    ) -> List[MailMessage]:
        """Fetch the messages of the inbox that carry a DMARC report.

        Searches unread messages (all messages if ``include_read``) and keeps
        the ``limit`` most recent matches. Without a limit all matches are
        kept when including read messages and the most recent 50 otherwise.
        Message flags are not changed.
        """
        client = self._require_client()
        msg_count = await client.select(self.folders.inbox)
        await self._log.adebug("Opened inbox.", msg_count=msg_count)

        uids = sorted(await client.uid_search(b"ALL" if include_read else b"UNSEEN"))
        if limit:
            uids = uids[-limit:]
        elif not include_read:
            uids = uids[-DEFAULT_FETCH_LIMIT:]
        await self._log.ainfo(
            "Found messages.", count=len(uids), include_read=include_read
        )
        if not uids:
            return []

        while not client.fetched_queue.empty():
            client.fetched_queue.get_nowait()
        await client.uid_fetch(uids, b"(UID BODY.PEEK[])")

        messages = {}
        while not client.fetched_queue.empty():
            fetched = client.fetched_queue.get_nowait()
            uid, raw = self._extract_uid_and_body(fetched)
            if uid is None or raw is None:
                await self._log.adebug("Ignoring FETCH response.", response=fetched[0])
                continue
            try:
                message = parse_mail_message(uid, raw, self.is_report_attachment)
            except Exception:  # pylint: disable=broad-except
                await self._log.aexception("Failed to parse message.", uid=uid)
                continue
            if message.attachments:
                messages[uid] = message
            else:
                await self._log.adebug("Message has no DMARC report.", uid=uid)

        return [messages[uid] for uid in uids if uid in messages]

    @classmethod
    def _extract_uid_and_body(
        cls, parsed_response: Sequence[Any]
    ) -> Tuple[Optional[int], Optional[bytes]]:
        uid, body = None, None
        if len(parsed_response) >= 3 and parsed_response[1] == b"FETCH":
            for item in cast(Iterable[Tuple[Any, ...]], parsed_response[2]):
                if item[0] == b"UID":
                    uid = cast(int, item[1])
                elif item[0] in (b"BODY", b"RFC822") and len(item) >= 2:
                    body = item[-1]
        return uid, body

    async def mark_messages_read(self, uids: Sequence[int]):
        if not uids:
            return
        client = self._require_client()
        await client.uid_store(uids, rb"+FLAGS.SILENT (\Seen)")
        await self._log.ainfo("Marked messages as read.", count=len(uids))

    async def ensure_archive_folder(self) -> bool:
        if self._archive_verified:
            return True
        client = self._require_client()
        try:
            await client.create_if_not_exists(self.folders.archive)
        except ImapError as err:
            await self._log.awarning(
                "Could not create or verify archive folder.",
                folder=self.folders.archive,
                error=str(err),
            )
            return False
        finally:
            await client.select(self.folders.inbox)
        self._archive_verified = True
        return True

    async def move_messages_to_archive(self, uids: Sequence[int]):
        if not uids:
            return
        if not await self.ensure_archive_folder():
            await self.mark_messages_read(uids)
            return
        client = self._require_client()
        await client.uid_move_graceful(uids, self.folders.archive)
        await self._log.ainfo(
            "Moved messages to archive.", count=len(uids), folder=self.folders.archive
        )
