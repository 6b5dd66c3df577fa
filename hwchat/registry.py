import asyncio
import logging
import random
import string
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .framing import write_frame

"""
registry.py - who is connected right now, and how to reach them.

The registry maps hwid -> Entry(writer, client). It is the only state shared
between connection tasks, so every read and write of the map happens under
one asyncio.Lock.

Broadcast does NOT hold the lock while writing: it copies the recipient list
under the lock, releases it, then writes. A client that joins or leaves
mid-broadcast may or may not get that message; a slow client can't stall
everyone else's registry access. Each write is bounded by write_timeout and
a recipient that fails or times out is unregistered and its transport is
aborted, without affecting the rest of the fan-out.
"""

logger = logging.getLogger(__name__)

MAX_USERNAME_LEN = 32
DEFAULT_WRITE_TIMEOUT = 5.0


def is_valid_username(name: str) -> bool:
    """Non-empty, at most 32 characters, only alphanumerics and ASCII punctuation."""
    if not name or len(name) > MAX_USERNAME_LEN:
        return False
    return all(c.isalnum() or c in string.punctuation for c in name)


def placeholder_username() -> str:
    return f"User{random.randint(0, 32767)}"


def check_username(name: str) -> str:
    """Return `name` if it is valid, otherwise a generated placeholder."""
    if is_valid_username(name):
        return name
    return placeholder_username()


def disconnect(writer: asyncio.StreamWriter) -> None:
    """
    Tear a connection down now, discarding anything still buffered.

    close() waits for the send buffer to flush before the peer's reader sees
    EOF, which never happens for a peer that stopped reading.
    """
    writer.transport.abort()


@dataclass
class Client:
    connection_id: str
    hwid: str
    display_name: str
    session_token: str


@dataclass
class Entry:
    writer: asyncio.StreamWriter
    client: Client


class ClientRegistry:
    """In-memory hwid -> (send handle, client) map, safe across connection tasks."""

    def __init__(self, write_timeout: Optional[float] = DEFAULT_WRITE_TIMEOUT) -> None:
        self.write_timeout = write_timeout
        self._entries: Dict[str, Entry] = {}
        self._lock = asyncio.Lock()

    async def insert(self, hwid: str, writer: asyncio.StreamWriter, client: Client) -> Optional[Entry]:
        """
        Register `client` under `hwid`. Last authenticated wins.

        Returns the entry it replaced (None if the hwid was free) so the
        caller can close the superseded connection.
        """
        async with self._lock:
            previous = self._entries.get(hwid)
            self._entries[hwid] = Entry(writer, client)
            total = len(self._entries)
        logger.info("Registered %s as %r (%d connected)", hwid, client.display_name, total)
        return previous

    async def remove(self, hwid: str, connection_id: Optional[str] = None) -> Optional[Entry]:
        """
        Drop the entry for `hwid`.

        With `connection_id`, only drop it if it still belongs to that
        connection; an evicted connection must not unregister the client
        that replaced it.
        """
        async with self._lock:
            entry = self._entries.get(hwid)
            if entry is None:
                return None
            if connection_id is not None and entry.client.connection_id != connection_id:
                return None
            del self._entries[hwid]
            total = len(self._entries)
        logger.info("Unregistered %s (%d connected)", hwid, total)
        return entry

    async def get(self, hwid: str) -> Optional[Client]:
        async with self._lock:
            entry = self._entries.get(hwid)
            return entry.client if entry else None

    async def rename(self, hwid: str, display_name: str, connection_id: Optional[str] = None) -> bool:
        """Change the display name; `connection_id` guards it like remove()."""
        async with self._lock:
            entry = self._entries.get(hwid)
            if entry is None:
                return False
            if connection_id is not None and entry.client.connection_id != connection_id:
                return False
            entry.client.display_name = display_name
            return True

    async def snapshot(self) -> List[Entry]:
        # Shallow copy so callers iterate without the lock.
        async with self._lock:
            return list(self._entries.values())

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)

    async def broadcast(self, exclude_hwid: Optional[str], build_message: Callable[[Client], object]) -> int:
        """
        Send build_message(recipient) to every client except `exclude_hwid`.

        Best effort: a failed or timed-out write is logged, that recipient is
        dropped, and the loop continues. Returns how many
        recipients were written to successfully.
        """
        recipients = [e for e in await self.snapshot() if e.client.hwid != exclude_hwid]
        delivered = 0
        for entry in recipients:
            try:
                await write_frame(entry.writer, build_message(entry.client), self.write_timeout)
            except asyncio.TimeoutError:
                logger.warning("Write to %s timed out after %ss; dropping it",
                               entry.client.hwid, self.write_timeout)
                await self.drop(entry)
            except (ConnectionError, OSError) as exc:
                logger.warning("Write to %s failed: %s", entry.client.hwid, exc)
                await self.drop(entry)
            else:
                delivered += 1
        return delivered

    async def drop(self, entry: Entry) -> None:
        """Unregister `entry` (if it is still current) and abort its connection."""
        await self.remove(entry.client.hwid, entry.client.connection_id)
        disconnect(entry.writer)
