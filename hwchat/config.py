import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import tomlkit

from .registry import placeholder_username

"""
config.py - TOML settings for the server and the client.

Each role reads one table from its own file:

    # server_config.toml
    [server]
    host = "127.0.0.1"
    port = 7878
    ...

Rules (config problems are never fatal):
- File missing      -> use defaults and write them out so the user can edit.
- File unparsable   -> log it, use defaults, leave the file alone.
- One key bad       -> that key falls back to its default, the rest apply.

The path comes from the caller (--config), else $HWCHAT_CONFIG, else the
role's default file name in the working directory.
"""

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "HWCHAT_CONFIG"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7878


@dataclass
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    buffer_size: int = 2048
    auth_timeout: float = 30.0
    write_timeout: float = 5.0

    SECTION = "server"
    FILENAME = "server_config.toml"


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    name: str = field(default_factory=placeholder_username)
    buffer_size: int = 2048
    connect_timeout: float = 10.0

    SECTION = "client"
    FILENAME = "client_config.toml"


C = TypeVar("C", ServerConfig, ClientConfig)


def config_path(cls: Type[C], path: Optional[str] = None) -> Path:
    if path:
        return Path(path)
    env = (os.environ.get(CONFIG_PATH_ENV) or "").strip()
    if env:
        return Path(env)
    return Path(cls.FILENAME)


def _coerce(kind: type, value: Any) -> Any:
    # bool is an int subclass; never accept it where a number is expected.
    if isinstance(value, bool):
        raise TypeError("boolean not allowed")
    if kind is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{value} is not an integer")
        return int(value)
    if kind is float:
        if not isinstance(value, (int, float)):
            raise TypeError(f"{value!r} is not a number")
        return float(value)
    if kind is str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{value!r} is not a non-empty string")
        return value.strip()
    return value


def _validate(cfg: C) -> None:
    # Range checks that type coercion can't express.
    if not 0 <= cfg.port <= 65535:
        raise ValueError("port out of range")
    if cfg.buffer_size <= 0:
        raise ValueError("buffer_size must be positive")


def from_mapping(cls: Type[C], data: Dict[str, Any]) -> C:
    """Build a config from a parsed table, falling back per key."""
    cfg = cls()
    kinds = {"str": str, "int": int, "float": float}
    for f in fields(cls):
        if f.name not in data:
            continue
        kind = f.type if isinstance(f.type, type) else kinds.get(f.type, str)
        try:
            candidate = replace(cfg, **{f.name: _coerce(kind, data[f.name])})
            _validate(candidate)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring %s.%s = %r (%s); using %r",
                           cls.SECTION, f.name, data[f.name], exc, getattr(cfg, f.name))
            continue
        cfg = candidate
    return cfg


def write_config(cfg: C, path: Path) -> None:
    doc = tomlkit.document()
    table = tomlkit.table()
    for key, value in asdict(cfg).items():
        table[key] = value
    doc[cfg.SECTION] = table
    path.write_text(tomlkit.dumps(doc), encoding="utf-8")


def load_or_create(cls: Type[C], path: Optional[str] = None) -> C:
    """
    Load the role's config, creating the file with defaults if it is missing.
    """
    p = config_path(cls, path)
    try:
        raw = p.read_bytes()
    except FileNotFoundError:
        cfg = cls()
        try:
            write_config(cfg, p)
            logger.info("Created default config at %s", p)
        except OSError as exc:
            logger.error("Unable to create %s! %s", p, exc)
        return cfg
    except OSError as exc:
        logger.error("Unable to read %s (using defaults)! %s", p, exc)
        return cls()

    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        logger.error("Unable to parse %s (using defaults)! %s", p, exc)
        return cls()

    section = data.get(cls.SECTION)
    if not isinstance(section, dict):
        logger.warning("%s has no [%s] table; using defaults", p, cls.SECTION)
        return cls()
    return from_mapping(cls, section)
