import asyncio
import contextlib
import logging
import sys
import threading
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from .config import ClientConfig, ServerConfig
from .crypto import new_connection_id, new_session_token
from .framing import DecodeError, EncodeOverflow, write_frame
from .messages import (
    CLIENT_CATALOG,
    SERVER_CATALOG,
    AuthenticateToken,
    BroadcastMessage,
    ChangeUsername,
    ChatMessage,
    ClientMessageType,
    RequestAuthentication,
)
from .reader import read_messages
from .registry import Client, ClientRegistry, check_username, disconnect, is_valid_username

"""
node.py - chat server (listener + per-connection sessions) and chat client.

Server side:
- ChatServer accepts TCP connections; each one gets its own Session task.
  Tasks are never joined; the listener keeps accepting while they run.
- Session is a small state machine: AWAITING_AUTH -> AUTHENTICATED -> CLOSED.
  Before auth only RequestAuthentication counts (anything else is logged and
  dropped) and the whole phase has a deadline. After auth, frames go to the
  per-type handlers below.
- Everything that can go wrong on one connection (bad frame, I/O error,
  timeout) ends that connection only. Nothing here exits the process.

Client side:
- ChatClient authenticates, prints broadcasts, and sends lines from stdin.

Re-authentication policy: a second login with a live hwid evicts the old
connection (its transport is aborted) and the new one takes the registry slot.
"""

logger = logging.getLogger(__name__)


class SessionState(Enum):
    AWAITING_AUTH = "awaiting_auth"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


Handler = Callable[["Session", object], Awaitable[None]]
HANDLERS: Dict[ClientMessageType, Handler] = {}


def handles(kind: ClientMessageType):
    """Register a Session method as the post-auth handler for `kind`."""
    def decorator(fn):
        HANDLERS[kind] = fn
        return fn
    return decorator


class Session:
    """One accepted connection, from first byte to close."""

    def __init__(self, server: "ChatServer", reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.server = server
        self.registry = server.registry
        self.config = server.config
        self.reader = reader
        self.writer = writer
        self.connection_id = new_connection_id()
        self.peer = writer.get_extra_info("peername")
        self.state = SessionState.AWAITING_AUTH
        self.client: Optional[Client] = None

    async def run(self) -> None:
        messages = read_messages(self.reader, CLIENT_CATALOG, self.config.buffer_size)
        try:
            await asyncio.wait_for(self.authenticate(messages), self.config.auth_timeout)
            if self.state is SessionState.AUTHENTICATED:
                async for message in messages:
                    await self.dispatch(message)
        except asyncio.TimeoutError:
            stage = "authentication" if self.state is SessionState.AWAITING_AUTH else "write"
            logger.warning("%s: %s timed out", self.peer, stage)
        except DecodeError as exc:
            # Framing is out of sync; nothing after this point can be trusted.
            logger.warning("%s: dropping connection, bad frame: %s", self.peer, exc)
        except (ConnectionError, OSError, asyncio.IncompleteReadError) as exc:
            logger.info("%s: connection error: %s", self.peer, exc)
        except Exception:
            logger.exception("%s: unexpected error in session", self.peer)
        finally:
            self.state = SessionState.CLOSED
            await messages.aclose()
            if self.client is not None:
                await self.registry.remove(self.client.hwid, self.connection_id)
            await self.shutdown()
            logger.info("%s disconnected", self.peer)

    async def authenticate(self, messages: AsyncIterator[object]) -> None:
        """Consume frames until a valid RequestAuthentication (or end-of-stream)."""
        logger.info("Waiting for HWID from %s...", self.peer)
        async for message in messages:
            if not isinstance(message, RequestAuthentication):
                logger.warning("%s: received %s before authentication; ignored",
                               self.peer, type(message).__name__)
                continue
            if await self.accept(message):
                return

    async def accept(self, request: RequestAuthentication) -> bool:
        if not request.hwid:
            logger.warning("%s: authentication with an empty hwid; ignored", self.peer)
            return False

        name = check_username(request.name)
        if name != request.name:
            logger.info("%s: invalid username %r replaced with %r", self.peer, request.name, name)

        client = Client(
            connection_id=self.connection_id,
            hwid=request.hwid,
            display_name=name,
            session_token=new_session_token(),
        )
        await write_frame(self.writer, AuthenticateToken(client.session_token), self.config.write_timeout)

        previous = await self.registry.insert(client.hwid, self.writer, client)
        self.client = client
        self.state = SessionState.AUTHENTICATED
        logger.info("Found Hwid [%s] on %s", client.hwid, self.peer)

        if previous is not None and previous.writer is not self.writer:
            logger.info("Evicting previous connection for %s", client.hwid)
            disconnect(previous.writer)
        return True

    async def shutdown(self) -> None:
        """Close our writer, aborting it if the peer won't take the buffered bytes."""
        self.writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            try:
                await asyncio.wait_for(self.writer.wait_closed(), self.config.write_timeout)
            except asyncio.TimeoutError:
                disconnect(self.writer)

    async def dispatch(self, message) -> None:
        if self.writer.is_closing():
            # Evicted or dropped; frames still buffered from this peer are stale.
            return
        kind = CLIENT_CATALOG.from_tag(int(type(message).TAG))
        handler = HANDLERS.get(kind)
        if handler is None:
            logger.warning("Received unknown message %r", message)
            return
        if getattr(message, "hwid", self.client.hwid) != self.client.hwid:
            logger.warning("%s: %s claims hwid %s; ignored",
                           self.client.hwid, type(message).__name__, message.hwid)
            return
        await handler(self, message)

    @handles(ClientMessageType.CHAT_MESSAGE)
    async def on_chat_message(self, message: ChatMessage) -> None:
        logger.info("%s said %s", self.client.display_name, message.content)
        sender = self.client.display_name
        delivered = await self.registry.broadcast(
            self.client.hwid,
            lambda recipient: BroadcastMessage(sender=sender, content=message.content),
        )
        logger.debug("Broadcast from %s reached %d client(s)", self.client.hwid, delivered)

    @handles(ClientMessageType.CHANGE_USERNAME)
    async def on_change_username(self, message: ChangeUsername) -> None:
        if not is_valid_username(message.new_username):
            logger.warning("%s: rejected username change to %r", self.client.hwid, message.new_username)
            return
        old = self.client.display_name
        if not await self.registry.rename(self.client.hwid, message.new_username, self.connection_id):
            return
        self.client.display_name = message.new_username
        logger.info("%s changed their username from %s to %s", self.client.hwid, old, message.new_username)

    @handles(ClientMessageType.REQUEST_AUTHENTICATION)
    async def on_request_authentication(self, message: RequestAuthentication) -> None:
        logger.warning("%s: already authenticated; ignoring repeated request", self.client.hwid)


class ChatServer:
    """
    TCP listener that hands every connection to a Session.

    Failing to bind is the one error allowed to take the process down.
    """

    def __init__(self, config: ServerConfig, registry: Optional[ClientRegistry] = None) -> None:
        self.config = config
        self.registry = registry if registry is not None else ClientRegistry(config.write_timeout)
        self._server: Optional[asyncio.AbstractServer] = None

    async def serve(self) -> asyncio.AbstractServer:
        """Bind and start accepting; returns the asyncio server."""
        self._server = await asyncio.start_server(self.handle_conn, self.config.host, self.config.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Server started @ %s", addrs)
        return self._server

    async def start(self) -> None:
        """Bind and serve forever."""
        server = await self.serve()
        async with server:
            await server.serve_forever()

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.info("%s connected", writer.get_extra_info("peername"))
        await Session(self, reader, writer).run()

    def close(self) -> None:
        """Stop accepting; live sessions run until their peers go away."""
        if self._server is not None:
            self._server.close()


async def stdin_lines() -> AsyncIterator[str]:
    """Lines typed on stdin, read by a daemon thread so exit never waits on it."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def pump() -> None:
        with contextlib.suppress(RuntimeError):  # loop already closed
            for line in sys.stdin:
                loop.call_soon_threadsafe(queue.put_nowait, line)
            loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=pump, name="stdin", daemon=True).start()
    while True:
        line = await queue.get()
        if line is None:
            return
        yield line


class ChatClient:
    """
    Terminal client:
      - Authenticates with our HWID and configured name.
      - Logs the session token and every broadcast it receives.
      - Sends each input line as a chat message; "/name X" renames.
    """

    def __init__(self, config: ClientConfig, hwid: str) -> None:
        self.config = config
        self.hwid = hwid
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.session_token: Optional[str] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

    async def connect(self) -> None:
        """Open the connection and send RequestAuthentication."""
        self.reader, self.writer = await asyncio.wait_for(
            asyncio.open_connection(self.config.host, self.config.port),
            self.config.connect_timeout,
        )
        logger.info("Connected to server %s:%s", self.config.host, self.config.port)
        await write_frame(self.writer, RequestAuthentication(hwid=self.hwid, name=self.config.name))

    async def send_chat(self, content: str) -> None:
        await write_frame(self.writer, ChatMessage(hwid=self.hwid, content=content))

    async def change_username(self, new_username: str) -> None:
        await write_frame(self.writer, ChangeUsername(hwid=self.hwid, new_username=new_username))

    async def handle_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        try:
            if text.startswith("/name "):
                await self.change_username(text[len("/name "):].strip())
            else:
                await self.send_chat(text)
        except EncodeOverflow as exc:
            logger.error("Message not sent: %s", exc)

    async def process_incoming(self, message) -> None:
        if isinstance(message, AuthenticateToken):
            self.session_token = message.token
            logger.info("Session-Token: %s", message.token)
        elif isinstance(message, BroadcastMessage):
            logger.info("%s --> %s", message.sender, message.content)
        await self.inbox.put(message)

    async def reader_loop(self) -> None:
        """Read server frames until the server goes away."""
        try:
            async for message in read_messages(self.reader, SERVER_CATALOG, self.config.buffer_size):
                await self.process_incoming(message)
        except DecodeError as exc:
            logger.error("Bad frame from server: %s", exc)
        except (ConnectionError, OSError) as exc:
            logger.error("Error reading from server! %s", exc)
        else:
            logger.warning("Server disconnected")

    async def run(self, lines: Optional[AsyncIterator[str]] = None) -> None:
        """Connect, then relay input lines until input ends or the server leaves."""
        await self.connect()
        reading = asyncio.create_task(self.reader_loop())

        async def relay() -> None:
            try:
                async for line in lines if lines is not None else stdin_lines():
                    await self.handle_line(line)
            except (ConnectionError, OSError) as exc:
                logger.error("Error writing to server! %s", exc)

        sending = asyncio.create_task(relay())
        try:
            await asyncio.wait({reading, sending}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sending.cancel()
            reading.cancel()
            await self.close()

    async def close(self) -> None:
        if self.writer is None:
            return
        self.writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self.writer.wait_closed()
