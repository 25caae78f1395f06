import asyncio
import contextlib
import itertools
import ssl
import time
from asyncio import Event, Future, Lock, Queue, StreamReader, StreamWriter
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import (
    Callable,
    Coroutine,
    DefaultDict,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

import structlog
from bite import parse_incremental
from bite.parsers import ParsedNode

from .errors import NotConnected
from .imap_parser import response as response_grammar

logger = structlog.get_logger()

# Raw bytes are sent verbatim, strings as literals, and UID lists as sequence sets.
CommandArgument = Union[bytes, str, List[int]]


@dataclass
class ConnectionConfig:
    username: str
    password: str
    host: str = "localhost"
    port: int = 993
    use_ssl: bool = True
    verify_certificate: bool = True
    tls_minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    tls_maximum_version: ssl.TLSVersion = ssl.TLSVersion.MAXIMUM_SUPPORTED

    def create_ssl_context(self) -> Union[Literal[False], ssl.SSLContext]:
        if not self.use_ssl:
            return False
        ssl_context = ssl.create_default_context()
        if not self.verify_certificate:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        ssl_context.minimum_version = self.tls_minimum_version
        ssl_context.maximum_version = self.tls_maximum_version
        return ssl_context


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class ImapError(Exception):
    pass


class _PendingCommand:
    """A command waiting for its tagged completion response."""

    def __init__(self, tag: bytes, name: str):
        self.tag = tag
        self.name = name
        self.completion: "Future[Tuple[bytes, bytes]]" = (
            asyncio.get_running_loop().create_future()
        )

    def complete(self, state: bytes, text: bytes):
        if not self.completion.done():
            self.completion.set_result((state, text))


class _ImapCommandWriter:
    def __init__(
        self, writer: StreamWriter, continuation: Event, timeout_seconds: float
    ):
        self.writer = writer
        self._continuation = continuation
        self.timeout_seconds = timeout_seconds

    async def write_raw(self, buf: bytes):
        self.writer.write(buf)
        await asyncio.wait_for(self.writer.drain(), timeout=self.timeout_seconds)

    async def write_argument(self, argument: CommandArgument):
        if isinstance(argument, bytes):
            await self.write_raw(argument)
        elif isinstance(argument, str):
            await self.write_literal(argument.encode("utf-8"))
        else:
            await self.write_raw(b",".join(b"%d" % uid for uid in argument))

    async def write_literal(self, data: bytes):
        # The literal data may only be sent after the continuation request.
        self._continuation.clear()
        await self.write_raw(b"{%d}\r\n" % len(data))
        await self._continuation.wait()
        await self.write_raw(data)


# pylint: disable=too-many-instance-attributes,too-many-public-methods
class ImapClient:
    """Asynchronous IMAP4rev1 client for a single connection.

    Commands can be issued concurrently; commands of the same kind are
    executed one after another. Untagged ``FETCH`` responses are put into
    :attr:`fetched_queue`. When the server closes the connection,
    :attr:`state` becomes :attr:`ConnectionState.DISCONNECTED` and pending as
    well as further commands fail with :class:`NotConnected`.
    """

    num_exists: Optional[int]
    fetched_queue: Queue
    state: ConnectionState
    _capabilities: FrozenSet[str]
    _pending: Dict[bytes, _PendingCommand]
    _kind_locks: DefaultDict[str, Lock]
    _search_results: List[int]

    def __init__(self, connection: ConnectionConfig, timeout_seconds: float = 10):
        self.connection = connection
        self.timeout_seconds = timeout_seconds
        self.num_exists = None
        self.fetched_queue = Queue()
        self.state = ConnectionState.DISCONNECTED
        self.connection_lost = Event()
        self._last_response = time.time()
        self._capabilities = frozenset()
        self._search_results = []
        self._pending = {}
        self._kind_locks = defaultdict(Lock)
        self._write_lock = Lock()
        self._server_ready = Event()
        self._process_responses_task: Optional[asyncio.Task] = None
        self._writer: Optional[StreamWriter] = None
        self._tags = (b"a%d" % i for i in itertools.count())
        self._log = logger.bind(logger=self.__class__.__name__)

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, traceback):
        await self.close()

    async def open(self):
        """Connects, waits for the greeting, and logs in."""
        self.state = ConnectionState.CONNECTING
        self.connection_lost.clear()
        try:
            reader, self._writer = await asyncio.open_connection(
                self.connection.host,
                self.connection.port,
                ssl=self.connection.create_ssl_context(),
            )
            self._process_responses_task = asyncio.create_task(
                self._process_responses(reader)
            )
            await asyncio.wait_for(self._server_ready.wait(), self.timeout_seconds)
            await self._log.adebug("IMAP server ready.")
            await self._capability()
            await self._login(self.connection.username, self.connection.password)
        except BaseException:
            self._abort()
            raise
        self.state = ConnectionState.READY

    def _abort(self):
        if self._process_responses_task is not None:
            self._process_responses_task.cancel()
            self._process_responses_task = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        self._server_ready.clear()
        self.state = ConnectionState.DISCONNECTED

    async def close(self):
        if self._writer is None:
            return
        if not self._writer.is_closing() and not self.connection_lost.is_set():
            await self._log.adebug("Logging out.", timeout=self.timeout_seconds)
            with contextlib.suppress(asyncio.TimeoutError, NotConnected):
                await asyncio.wait_for(self._logout(), self.timeout_seconds)
        try:
            if not self._writer.is_closing():
                self._writer.close()
            await self._writer.wait_closed()
        finally:
            if self._process_responses_task is not None:
                # Drains responses still buffered after the connection closed.
                await self._process_responses_task
            self._process_responses_task = None
            self._server_ready.clear()
            self._writer = None
            self.state = ConnectionState.DISCONNECTED
            await self._log.adebug("Connection closed.")

    async def _process_responses(self, reader: StreamReader):
        try:
            async for parse_tree in parse_incremental(response_grammar, reader):
                response = parse_tree.values
                await self._log.adebug("IMAP response.", response=response)
                self._last_response = time.time()

                if response[0] == b"+":
                    self._server_ready.set()
                elif response[0] == b"*":
                    await self._process_untagged_response(response)
                else:
                    await self._process_tagged_response(
                        response[0], response[1], response[-1]
                    )
            await self._log.adebug("End of response stream.")
        except Exception:  # pylint: disable=broad-except
            await self._log.aexception("Error while processing server responses.")
        finally:
            self._mark_connection_lost()

    async def _process_tagged_response(self, tag: bytes, state: bytes, text: bytes):
        command = self._pending.get(tag)
        if command is None:
            await self._log.awarning("Response for unknown tag.", tag=tag)
            return
        await self._log.adebug(
            "IMAP command completed.", command=command.name, state=state, text=text
        )
        command.complete(state, text)

    def _mark_connection_lost(self):
        self.connection_lost.set()
        self.state = ConnectionState.DISCONNECTED
        for command in self._pending.values():
            command.complete(b"NO", b"Connection lost.")

    async def _process_untagged_response(self, response: ParsedNode):
        if len(response) < 2:
            return
        if isinstance(response[1], int):
            await self._process_message_data(response[1], response[2], response[3:])
            return

        kind, data = response[1].upper(), response[2:]
        if kind == b"OK":
            self._server_ready.set()
        elif kind == b"BYE":
            await self._log.ainfo(
                "IMAP server is closing the connection.", text=data[-1]
            )
        elif kind == b"CAPABILITY":
            self._capabilities = frozenset(
                c.upper() for c in data[0].decode("utf-8").split()
            )
            await self._log.adebug(
                "IMAP server reported capabilities.",
                capabilities=sorted(self._capabilities),
            )
        elif kind == b"SEARCH":
            self._search_results.extend(data)
        else:
            await self._log.adebug("Ignored untagged IMAP response.", response=kind)

    async def _process_message_data(self, number: int, kind: bytes, data: tuple):
        kind = kind.upper()
        if kind == b"EXISTS":
            self.num_exists = number
        elif kind == b"EXPUNGE":
            if self.num_exists is not None:
                self.num_exists -= 1
        elif kind == b"FETCH":
            await self.fetched_queue.put((number, kind, *data))

    async def _command(
        self, name: str, write_command: Callable[[_ImapCommandWriter], Coroutine]
    ):
        if self._writer is None or self.connection_lost.is_set():
            raise NotConnected()
        command = _PendingCommand(next(self._tags), name)
        self._pending[command.tag] = command
        try:
            async with self._kind_locks[name]:
                await self._send(command, write_command)
                await self._wait_for_completion(command)
        finally:
            del self._pending[command.tag]
            command.completion.cancel()

        state, text = command.completion.result()
        if state.upper() != b"OK":
            if self.connection_lost.is_set():
                raise NotConnected()
            raise ImapServerError(name, state, text)

    async def _send(
        self,
        command: _PendingCommand,
        write_command: Callable[[_ImapCommandWriter], Coroutine],
    ):
        async with self._write_lock:
            self._writer.write(command.tag + b" ")
            writing = asyncio.ensure_future(
                write_command(
                    _ImapCommandWriter(
                        self._writer, self._server_ready, self.timeout_seconds
                    )
                )
            )
            try:
                done, _ = await asyncio.wait(
                    [writing, command.completion], return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                # The server may complete a command early, e.g. by rejecting
                # a literal.
                if not writing.done():
                    writing.cancel()
            if writing in done:
                writing.result()

    async def _wait_for_completion(self, command: _PendingCommand):
        # Times out only if the server stays silent, not while it keeps
        # streaming responses.
        while not command.completion.done():
            await asyncio.wait([command.completion], timeout=self.timeout_seconds)
            if (
                not command.completion.done()
                and self.timeout_seconds < time.time() - self._last_response
            ):
                raise asyncio.TimeoutError("Waiting for response timed out.")

    async def _simple_command(self, name: str, *arguments: CommandArgument):
        async def write_command(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(name.encode("ascii"))
            for argument in arguments:
                await cmd_writer.write_raw(b" ")
                await cmd_writer.write_argument(argument)
            await cmd_writer.write_raw(b"\r\n")

        await self._command(name, write_command)

    async def _login(self, username: str, password: str):
        await self._simple_command("LOGIN", username, password)

    async def _logout(self):
        await self._simple_command("LOGOUT")

    async def _capability(self):
        await self._simple_command("CAPABILITY")

    def has_capability(self, capability: str) -> bool:
        return capability.upper() in self._capabilities

    async def noop(self):
        await self._simple_command("NOOP")

    async def select(self, mailbox: str = "INBOX") -> Optional[int]:
        """Selects *mailbox* and returns its message count."""
        await self._simple_command("SELECT", mailbox)
        return self.num_exists

    async def create(self, name: str):
        await self._simple_command("CREATE", name)

    async def create_if_not_exists(self, name: str):
        try:
            await self.select(name)
        except ImapServerError:
            await self.create(name)

    async def uid_search(self, criteria: bytes = b"ALL") -> List[int]:
        self._search_results = []
        await self._simple_command("UID SEARCH", criteria)
        results, self._search_results = self._search_results, []
        return results

    async def uid_fetch(self, uids: Iterable[int], attrs: bytes):
        """Fetches *attrs* of the given messages into :attr:`fetched_queue`."""
        await self._simple_command("UID FETCH", list(uids), attrs)

    async def uid_copy(self, uids: Iterable[int], destination: str):
        await self._simple_command("UID COPY", list(uids), destination)

    async def uid_move(self, uids: Iterable[int], destination: str):
        await self._simple_command("UID MOVE", list(uids), destination)

    async def uid_move_graceful(self, uids: Iterable[int], destination: str):
        """Moves messages, emulating MOVE with COPY, STORE and EXPUNGE on
        servers lacking the MOVE extension."""
        uids = list(uids)
        if self.has_capability("MOVE"):
            await self.uid_move(uids, destination)
        else:
            await self.uid_copy(uids, destination)
            await self.uid_store(uids, rb"+FLAGS.SILENT (\Deleted)")
            await self.expunge()

    async def uid_store(self, uids: Iterable[int], flags: bytes):
        await self._simple_command("UID STORE", list(uids), flags)

    async def expunge(self):
        await self._simple_command("EXPUNGE")


class ImapServerError(ImapError):
    """The server completed a command with ``NO`` or ``BAD``."""

    def __init__(self, command: str, result: bytes, server_response: bytes):
        self.command = command
        self.result = result
        self.server_response = server_response
        super().__init__(command, result, server_response)

    def __str__(self):
        return (
            f"IMAP command {self.command} failed with {self.result!r}: "
            f"{self.server_response!r}"
        )
