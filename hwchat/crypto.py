"""
crypto.py - device identity and session tokens.

Why this exists:
- Clients identify themselves with a hardware id (HWID). It has to be stable
  across runs on the same machine and must not leak the raw machine id, so
  we derive it as HMAC-SHA256(key, machine components) and hex-encode it.
- The server hands every authenticated connection a fresh session token.

Notes:
- The HWID is NOT a credential. The server trusts whatever the client sends;
  this only keeps honest clients from colliding.
- Session tokens are uuid4 strings (36 chars), regenerated on every login.
"""

import logging
import os
import platform
import uuid
from pathlib import Path
from typing import List, Optional

from cryptography.hazmat.primitives import hashes, hmac

logger = logging.getLogger(__name__)

HWID_KEY_ENV = "HWCHAT_HWID_KEY"
DEFAULT_HWID_KEY = b"1234567890"
MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


# -------------
# HWID
# -------------

def _read_machine_id() -> Optional[str]:
    for candidate in MACHINE_ID_PATHS:
        try:
            value = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if value:
            return value
    logger.debug("no machine-id file found; HWID falls back to MAC and hostname")
    return None


def machine_components() -> List[str]:
    """
    Collect the machine facts the HWID is derived from.

    Order matters: the same list must come out on every run.
    """
    parts = [
        _read_machine_id() or "",
        f"{uuid.getnode():012x}",  # primary MAC (or a random stand-in if none)
        platform.machine(),
        platform.node(),
    ]
    return parts


def derive_hwid(components: Optional[List[str]] = None, key: Optional[bytes] = None) -> str:
    """
    Keyed SHA-256 over the machine components, hex-encoded (64 chars).

    `key` defaults to $HWCHAT_HWID_KEY, then a built-in constant.
    """
    if components is None:
        components = machine_components()
    if key is None:
        env_key = os.environ.get(HWID_KEY_ENV)
        key = env_key.encode("utf-8") if env_key else DEFAULT_HWID_KEY

    h = hmac.HMAC(key, hashes.SHA256())
    for part in components:
        raw = part.encode("utf-8")
        # Length-prefix each part so ("ab", "c") and ("a", "bc") differ.
        h.update(len(raw).to_bytes(4, "little"))
        h.update(raw)
    return h.finalize().hex()


# -------------
# Session tokens
# -------------

def new_session_token() -> str:
    """Random, unguessable, 36-character UUID-shaped token."""
    return str(uuid.uuid4())


def new_connection_id() -> str:
    return uuid.uuid4().hex
