import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Dict, Tuple, Type

"""
messages.py - the two message catalogs (client->server, server->client).

What this module does:
- Numbers every message variant with a one-byte tag. Each direction has its
  own tag space, so tag 0 means ChatMessage on the way in and
  BroadcastMessage on the way out.
- Describes each variant as a frozen dataclass. The dataclass field order IS
  the wire order of the strings in the frame's field block.
- Maps unknown tags to an explicit INVALID_EVENT sentinel instead of raising,
  so dispatch code can log and move on.

Adding a message type = one enum member + one @CATALOG.register(...) class.
Registering a tag twice in the same catalog is an error at import time.
"""


class ClientMessageType(IntEnum):
    CHAT_MESSAGE = 0
    CHANGE_USERNAME = 1
    REQUEST_AUTHENTICATION = 2
    INVALID_EVENT = -1  # never a valid u8, so it can't collide with a real tag

    @classmethod
    def from_tag(cls, tag: int) -> "ClientMessageType":
        try:
            member = cls(tag)
        except ValueError:
            return cls.INVALID_EVENT
        return member


class ServerMessageType(IntEnum):
    BROADCAST_MESSAGE = 0
    AUTHENTICATE_TOKEN = 1
    INVALID_EVENT = -1

    @classmethod
    def from_tag(cls, tag: int) -> "ServerMessageType":
        try:
            member = cls(tag)
        except ValueError:
            return cls.INVALID_EVENT
        return member


class Catalog:
    """
    Tag <-> variant table for one direction of traffic.

    The frame codec is parameterized by a catalog: it asks here which class
    a tag decodes to and which string fields (in order) that class carries.
    """

    def __init__(self, name: str, tag_enum: Type[IntEnum]) -> None:
        self.name = name
        self.tag_enum = tag_enum
        self._by_tag: Dict[int, type] = {}
        self._by_cls: Dict[type, IntEnum] = {}

    def register(self, tag: IntEnum):
        """Class decorator binding a dataclass to `tag` in this catalog."""
        if tag == self.tag_enum.INVALID_EVENT:
            raise ValueError(f"{self.name}: INVALID_EVENT is not a registrable tag")

        def decorator(cls):
            if int(tag) in self._by_tag:
                raise ValueError(
                    f"{self.name}: tag {int(tag)} already used by {self._by_tag[int(tag)].__name__}"
                )
            for f in dataclasses.fields(cls):
                if f.type not in (str, "str"):
                    raise TypeError(f"{cls.__name__}.{f.name}: only str fields go on the wire")
            self._by_tag[int(tag)] = cls
            self._by_cls[cls] = tag
            cls.CATALOG = self
            cls.TAG = tag
            return cls

        return decorator

    def from_tag(self, tag: int) -> IntEnum:
        """Total mapping: anything unregistered yields INVALID_EVENT."""
        if tag not in self._by_tag:
            return self.tag_enum.INVALID_EVENT
        return self.tag_enum(tag)

    def variant_for(self, tag: int) -> type:
        return self._by_tag[tag]

    def tag_of(self, message) -> IntEnum:
        try:
            return self._by_cls[type(message)]
        except KeyError:
            raise ValueError(f"{type(message).__name__} is not a {self.name} message") from None

    @staticmethod
    def fields_of(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(cls))

    def __contains__(self, tag: int) -> bool:
        return tag in self._by_tag

    def __len__(self) -> int:
        return len(self._by_tag)

    def __repr__(self) -> str:
        return f"Catalog({self.name!r}, {sorted(self._by_tag)})"


CLIENT_CATALOG = Catalog("client", ClientMessageType)
SERVER_CATALOG = Catalog("server", ServerMessageType)


# -----------------------
# Client -> server
# -----------------------

@CLIENT_CATALOG.register(ClientMessageType.CHAT_MESSAGE)
@dataclass(frozen=True)
class ChatMessage:
    CATALOG: ClassVar[Catalog]
    TAG: ClassVar[IntEnum]

    hwid: str
    content: str


@CLIENT_CATALOG.register(ClientMessageType.CHANGE_USERNAME)
@dataclass(frozen=True)
class ChangeUsername:
    CATALOG: ClassVar[Catalog]
    TAG: ClassVar[IntEnum]

    hwid: str
    new_username: str


@CLIENT_CATALOG.register(ClientMessageType.REQUEST_AUTHENTICATION)
@dataclass(frozen=True)
class RequestAuthentication:
    CATALOG: ClassVar[Catalog]
    TAG: ClassVar[IntEnum]

    hwid: str
    name: str


# -----------------------
# Server -> client
# -----------------------

@SERVER_CATALOG.register(ServerMessageType.BROADCAST_MESSAGE)
@dataclass(frozen=True)
class BroadcastMessage:
    CATALOG: ClassVar[Catalog]
    TAG: ClassVar[IntEnum]

    sender: str  # display name of the author
    content: str


@SERVER_CATALOG.register(ServerMessageType.AUTHENTICATE_TOKEN)
@dataclass(frozen=True)
class AuthenticateToken:
    CATALOG: ClassVar[Catalog]
    TAG: ClassVar[IntEnum]

    token: str
