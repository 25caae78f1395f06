import asyncio
import re
import smtplib
import ssl
import time
from asyncio import StreamReader, StreamWriter, start_server
from dataclasses import astuple, dataclass, field
from email.message import EmailMessage
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Union,
)

import pytest
import pytest_asyncio
import requests
import structlog

from dmarc_report_ingester.imap_client import ConnectionConfig, ImapClient
from dmarc_report_ingester.storage import ReportStore

logger = structlog.get_logger()


@dataclass
class NetworkAddress:
    host: str
    port: int


@dataclass
class Greenmail:
    smtp: NetworkAddress
    imap: ConnectionConfig
    api: NetworkAddress

    @property
    def api_url(self) -> str:
        return f"http://{self.api.host}:{self.api.port}/api"

    def is_ready(self) -> bool:
        return (
            requests.get(f"{self.api_url}/service/readiness", timeout=1).status_code
            == requests.codes.ok
        )

    def purge_mails(self):
        requests.post(f"{self.api_url}/mail/purge", timeout=5).raise_for_status()


@pytest.fixture(name="greenmail")
def fixture_greenmail() -> Greenmail:
    greenmail = Greenmail(
        smtp=NetworkAddress("localhost", 3025),
        imap=ConnectionConfig(
            host="localhost",
            port=3993,
            username="reports@localhost",
            password="password",
            use_ssl=True,
            verify_certificate=False,
            # Greenmail sends a "user_cancelled" alert before "close_notify"
            # on logout which OpenSSL >= 3.2 rejects with TLS 1.3
            # (JDK-8282600: https://bugs.openjdk.org/browse/JDK-8282600).
            tls_maximum_version=ssl.TLSVersion.TLSv1_2,
        ),
        api=NetworkAddress("localhost", 8080),
    )
    try:
        greenmail.purge_mails()
    except requests.RequestException:
        pytest.skip("Greenmail is not running.")
    return greenmail


@pytest_asyncio.fixture(name="store")
async def fixture_store(tmp_path) -> ReportStore:
    store = ReportStore(f"sqlite+aiosqlite:///{tmp_path / 'reports.db'}")
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


async def try_until_success(
    function: Union[Callable[[], Awaitable], Callable[[], Any]],
    timeout_seconds: int = 10,
    max_fn_duration_seconds: int = 1,
    poll_interval_seconds: float = 0.1,
):
    timeout = time.time() + timeout_seconds
    last_err = None
    while time.time() < timeout:
        try:
            result = function()
            if hasattr(result, "__await__"):
                return await asyncio.wait_for(result, max_fn_duration_seconds)
            else:
                return result
        except asyncio.TimeoutError as err:
            raise TimeoutError(
                f"Function execution duration exceeded {max_fn_duration_seconds} seconds."
            ) from err
        except Exception as err:  # pylint: disable=broad-except
            last_err = err
            await asyncio.sleep(poll_interval_seconds)
    raise TimeoutError(
        f"Call to {function} not successful within {timeout_seconds} seconds."
    ) from last_err


async def send_email(msg: EmailMessage, network_address: NetworkAddress):
    smtp = smtplib.SMTP(*astuple(network_address))
    smtp.send_message(msg)
    smtp.quit()


async def verify_email_delivered(connection: ConnectionConfig, mailboxes=("INBOX",)):
    async with ImapClient(connection) as client:
        msg_counts = []
        for mailbox in mailboxes:
            msg_counts.append(await client.select(mailbox))
        assert any(count > 0 for count in msg_counts)


@dataclass
class MockMessage:
    uid: int
    content: bytes
    flags: Set[bytes] = field(default_factory=set)


CommandHandler = Callable[[StreamWriter], Coroutine]

_LITERAL = re.compile(rb"\{(\d+)\}\r\n")


def _parse_literals(remainder: bytes) -> List[bytes]:
    values = []
    pos = 0
    while True:
        match = _LITERAL.search(remainder, pos)
        if not match:
            return values
        start = match.end()
        end = start + int(match.group(1))
        values.append(remainder[start:end])
        pos = end


def _parse_sequence_set(sequence_set: bytes) -> List[int]:
    uids = []
    for part in sequence_set.split(b","):
        if b":" in part:
            first, last = part.split(b":")
            uids.extend(range(int(first), int(last) + 1))
        else:
            uids.append(int(part))
    return uids


class MockImapServer:
    """IMAP server sufficient to exercise the client and mailbox connector.

    Keeps messages per mailbox in memory. ``command_handlers`` take
    precedence over the built-in behaviour; a handler returning a truthy value
    suppresses the tagged completion response.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        command_handlers: Optional[Dict[bytes, CommandHandler]] = None,
        mailboxes: Optional[Dict[str, List[MockMessage]]] = None,
        capabilities: Sequence[bytes] = (b"IMAP4rev1", b"MOVE"),
        password: str = "password",
        fail_create: bool = False,
    ):
        self.host = host
        self.port = port
        self.command_handlers = command_handlers or {}
        self.mailboxes: Dict[str, List[MockMessage]] = (
            mailboxes if mailboxes is not None else {"INBOX": []}
        )
        self.capabilities = capabilities
        self.password = password
        self.fail_create = fail_create
        self.received_commands: List[bytes] = []
        self.num_connections = 0
        self._selected: Optional[str] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._write_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._log = logger.bind(logger=self.__class__.__name__)

    @property
    def connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            "username", "password", self.host, self.port, use_ssl=False
        )

    @property
    def inbox(self) -> List[MockMessage]:
        return self.mailboxes["INBOX"]

    def add_message(self, content: bytes, mailbox: str = "INBOX", seen=False):
        next_uid = 1 + max(
            (msg.uid for msgs in self.mailboxes.values() for msg in msgs), default=0
        )
        flags = {rb"\Seen"} if seen else set()
        self.mailboxes.setdefault(mailbox, []).append(
            MockMessage(next_uid, content, flags)
        )
        return next_uid

    async def __aenter__(self):
        self._server = await start_server(
            self._client_connected_cb, host=self.host, port=self.port
        )
        await self._server.__aenter__()
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, exc_type, exc, traceback):
        return await self._server.__aexit__(exc_type, exc, traceback)

    async def _client_connected_cb(self, reader: StreamReader, writer: StreamWriter):
        self.num_connections += 1
        writer.write(b"* OK hello\r\n")
        await writer.drain()

        while not reader.at_eof() and not writer.is_closing():
            line = await reader.readline()
            await self._log.adebug("MockImapServer received line.", line=line)
            parsed = re.match(
                rb"^(?P<tag>\w+)\s+(?P<command>(UID\s+)?\w+)(?P<remainder>.*)$", line
            )
            if not parsed:
                continue
            tag, command, remainder = (
                parsed.group("tag"),
                b" ".join(parsed.group("command").upper().split()),
                parsed.group("remainder") + b"\n",
            )
            async with self._write_lock:
                while remainder.endswith(b"}\r\n"):
                    writer.write(b"+ OK continue\r\n")
                    await writer.drain()
                    remainder += await reader.readline()

            self.received_commands.append(command)
            self._tasks.append(
                asyncio.create_task(
                    self._finish_command_handling(tag, command, remainder, writer)
                )
            )

        await asyncio.gather(*self._tasks, return_exceptions=True)
        if not writer.is_closing():
            writer.close()

    async def _finish_command_handling(
        self, tag: bytes, command: bytes, remainder: bytes, writer: StreamWriter
    ):
        handled = False
        suppress_tagged_response = False
        state = b"OK"
        if command in self.command_handlers:
            handled = True
            suppress_tagged_response = await self.command_handlers[command](writer)

        async with self._write_lock:
            if not handled and not writer.is_closing():
                state = self._handle_builtin(command, remainder, writer)

            if writer.is_closing():
                return
            if not suppress_tagged_response:
                writer.write(b" ".join((tag, state, command, b"completed\r\n")))
                if command == b"LOGOUT":
                    writer.write_eof()
            await writer.drain()

    # pylint: disable=too-many-return-statements,too-many-branches
    def _handle_builtin(
        self, command: bytes, remainder: bytes, writer: StreamWriter
    ) -> bytes:
        literals = _parse_literals(remainder)
        if command == b"CAPABILITY":
            writer.write(b"* CAPABILITY " + b" ".join(self.capabilities) + b"\r\n")
        elif command == b"LOGIN":
            if len(literals) != 2 or literals[1].decode("utf-8") != self.password:
                return b"NO"
        elif command == b"LOGOUT":
            writer.write(b"* BYE see you soon\r\n")
        elif command == b"SELECT":
            name = literals[0].decode("utf-8")
            if name not in self.mailboxes:
                return b"NO"
            self._selected = name
            writer.write(f"* {len(self.mailboxes[name])} EXISTS\r\n".encode("ascii"))
        elif command == b"CREATE":
            name = literals[0].decode("utf-8")
            if self.fail_create or name in self.mailboxes:
                return b"NO"
            self.mailboxes[name] = []
        elif command == b"UID SEARCH":
            criteria = remainder.strip().upper()
            uids = [
                msg.uid
                for msg in self._selected_messages()
                if criteria != b"UNSEEN" or rb"\Seen" not in msg.flags
            ]
            writer.write(
                b"* SEARCH"
                + b"".join(b" " + str(uid).encode("ascii") for uid in uids)
                + b"\r\n"
            )
        elif command == b"UID FETCH":
            sequence_set = remainder.split()[0]
            requested = set(_parse_sequence_set(sequence_set))
            for seq, msg in enumerate(self._selected_messages(), start=1):
                if msg.uid in requested:
                    writer.write(
                        f"* {seq} FETCH (UID {msg.uid} BODY[] "
                        f"{{{len(msg.content)}}}\r\n".encode("ascii")
                        + msg.content
                        + b")\r\n"
                    )
        elif command == b"UID STORE":
            sequence_set, _, flags = remainder.strip().split(b" ", 2)
            requested = set(_parse_sequence_set(sequence_set))
            for msg in self._selected_messages():
                if msg.uid in requested:
                    msg.flags.update(re.findall(rb"\\\w+", flags))
        elif command in (b"UID MOVE", b"UID COPY"):
            destination = literals[0].decode("utf-8")
            if destination not in self.mailboxes:
                return b"NO"
            requested = set(_parse_sequence_set(remainder.split()[0]))
            selected = self._selected_messages()
            for msg in [msg for msg in selected if msg.uid in requested]:
                self.mailboxes[destination].append(
                    MockMessage(msg.uid, msg.content, set(msg.flags))
                )
                if command == b"UID MOVE":
                    writer.write(
                        f"* {selected.index(msg) + 1} EXPUNGE\r\n".encode("ascii")
                    )
                    selected.remove(msg)
        elif command == b"EXPUNGE":
            selected = self._selected_messages()
            for msg in [msg for msg in selected if rb"\Deleted" in msg.flags]:
                writer.write(f"* {selected.index(msg) + 1} EXPUNGE\r\n".encode("ascii"))
                selected.remove(msg)
        return b"OK"

    def _selected_messages(self) -> List[MockMessage]:
        if self._selected is None:
            return []
        return self.mailboxes[self._selected]
