"""
test_registry.py
----------------
Username rules, insert/remove semantics and best-effort broadcast with
isolated per-recipient failures.
"""

import asyncio

import pytest

from hwchat.framing import decode
from hwchat.messages import SERVER_CATALOG, BroadcastMessage
from hwchat.registry import Client, ClientRegistry, check_username, is_valid_username


class FakeWriter:
    """Minimal StreamWriter stand-in that records frames or fails on demand."""

    def __init__(self, fail=None, hang=False):
        self.data = bytearray()
        self.fail = fail
        self.hang = hang
        self.closed = False
        self.aborted = False
        self.transport = self

    def write(self, data):
        if self.fail is not None:
            raise self.fail
        self.data.extend(data)

    async def drain(self):
        if self.hang:
            await asyncio.sleep(3600)

    def close(self):
        self.closed = True

    def abort(self):
        self.closed = self.aborted = True

    def messages(self):
        out, buf = [], bytes(self.data)
        while buf:
            message, consumed = decode(buf, SERVER_CATALOG)
            out.append(message)
            buf = buf[consumed:]
        return out


def make_client(hwid, name=None, connection_id=None):
    return Client(
        connection_id=connection_id or f"conn-{hwid}",
        hwid=hwid,
        display_name=name or hwid,
        session_token=f"token-{hwid}",
    )


def shout(recipient):
    return BroadcastMessage(sender="A", content="hi")


# -------------------------
# Usernames
# -------------------------

def test_username_boundaries():
    assert check_username("a" * 32) == "a" * 32
    assert check_username("Alice") == "Alice"
    assert check_username("r2-d2!") == "r2-d2!"
    assert check_username("") != ""
    assert check_username("a" * 33) != "a" * 33


@pytest.mark.parametrize("name", ["", "a" * 33, "has space", "tab\t", "nul\x00"])
def test_invalid_names_get_placeholder(name):
    assert not is_valid_username(name)
    replaced = check_username(name)
    assert replaced.startswith("User")
    assert is_valid_username(replaced)


def test_unicode_letters_are_alphanumeric():
    assert is_valid_username("Zoë")
    assert is_valid_username("名前")


# -------------------------
# Map operations
# -------------------------

@pytest.mark.asyncio
async def test_insert_get_remove():
    registry = ClientRegistry()
    client = make_client("H1", "Alice")
    assert await registry.insert("H1", FakeWriter(), client) is None
    assert await registry.get("H1") == client
    assert await registry.count() == 1
    removed = await registry.remove("H1")
    assert removed.client == client
    assert await registry.get("H1") is None
    assert await registry.remove("H1") is None


@pytest.mark.asyncio
async def test_reinsert_replaces_and_returns_previous():
    registry = ClientRegistry()
    old_writer, new_writer = FakeWriter(), FakeWriter()
    await registry.insert("H1", old_writer, make_client("H1", connection_id="old"))
    previous = await registry.insert("H1", new_writer, make_client("H1", connection_id="new"))
    assert previous is not None and previous.writer is old_writer
    assert await registry.count() == 1
    entries = await registry.snapshot()
    assert entries[0].writer is new_writer


@pytest.mark.asyncio
async def test_remove_by_stale_connection_keeps_successor():
    registry = ClientRegistry()
    await registry.insert("H1", FakeWriter(), make_client("H1", connection_id="old"))
    await registry.insert("H1", FakeWriter(), make_client("H1", connection_id="new"))
    assert await registry.remove("H1", connection_id="old") is None
    assert (await registry.get("H1")).connection_id == "new"
    assert await registry.remove("H1", connection_id="new") is not None


@pytest.mark.asyncio
async def test_rename():
    registry = ClientRegistry()
    await registry.insert("H1", FakeWriter(), make_client("H1", "Alice"))
    assert await registry.rename("H1", "Alicia")
    assert (await registry.get("H1")).display_name == "Alicia"
    assert not await registry.rename("nobody", "x")


@pytest.mark.asyncio
async def test_rename_ignores_superseded_connection():
    registry = ClientRegistry()
    await registry.insert("H1", FakeWriter(), make_client("H1", "Alice", connection_id="old"))
    await registry.insert("H1", FakeWriter(), make_client("H1", "Alice", connection_id="new"))

    assert not await registry.rename("H1", "Mallory", connection_id="old")
    assert await registry.rename("H1", "Alicia", connection_id="new")
    assert (await registry.get("H1")).display_name == "Alicia"


# -------------------------
# Broadcast
# -------------------------

@pytest.mark.asyncio
async def test_broadcast_skips_sender():
    registry = ClientRegistry()
    writers = {h: FakeWriter() for h in ("A", "B", "C")}
    for hwid, writer in writers.items():
        await registry.insert(hwid, writer, make_client(hwid))

    delivered = await registry.broadcast("A", shout)

    assert delivered == 2
    assert writers["A"].messages() == []
    assert writers["B"].messages() == [BroadcastMessage(sender="A", content="hi")]
    assert writers["C"].messages() == [BroadcastMessage(sender="A", content="hi")]


@pytest.mark.asyncio
async def test_broadcast_continues_after_failed_write():
    registry = ClientRegistry()
    a, b, c = FakeWriter(), FakeWriter(fail=ConnectionResetError("gone")), FakeWriter()
    await registry.insert("A", a, make_client("A"))
    await registry.insert("B", b, make_client("B"))
    await registry.insert("C", c, make_client("C"))

    delivered = await registry.broadcast("A", shout)

    assert delivered == 1
    assert b.aborted
    assert await registry.get("B") is None
    assert c.messages() == [BroadcastMessage(sender="A", content="hi")]
    assert a.messages() == []


@pytest.mark.asyncio
async def test_broadcast_times_out_slow_recipient():
    registry = ClientRegistry(write_timeout=0.05)
    slow, fast = FakeWriter(hang=True), FakeWriter()
    await registry.insert("A", FakeWriter(), make_client("A"))
    await registry.insert("SLOW", slow, make_client("SLOW"))
    await registry.insert("FAST", fast, make_client("FAST"))

    delivered = await asyncio.wait_for(registry.broadcast("A", shout), 2)

    assert delivered == 1
    assert slow.aborted
    assert await registry.get("SLOW") is None
    assert await registry.get("FAST") is not None
    assert fast.messages() == [BroadcastMessage(sender="A", content="hi")]


@pytest.mark.asyncio
async def test_build_message_sees_recipient():
    registry = ClientRegistry()
    writer = FakeWriter()
    await registry.insert("A", FakeWriter(), make_client("A"))
    await registry.insert("B", writer, make_client("B", "Bob"))

    await registry.broadcast("A", lambda r: BroadcastMessage(sender="A", content=f"hey {r.display_name}"))

    assert writer.messages()[0].content == "hey Bob"
