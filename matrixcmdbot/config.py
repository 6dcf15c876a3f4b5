"""Bot configuration loaded from a YAML file."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


@dataclass
class DatabaseConfig:
    """Where the crypto store lives and the key used to pickle it."""

    db_path: str = ""
    pickle: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> DatabaseConfig:
        """Build from the ``database`` section of the configuration."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("the 'database' section must be a mapping")
        return cls(db_path=_text(data, "dbpath"), pickle=_text(data, "pickle"))


@dataclass
class Config:
    """Settings the bot needs to log in and run."""

    homeserver: str = ""
    botname: str = ""
    username: str = ""
    password: str = ""
    loglevel: str = ""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Config:
        """Build from a mapping with the keys used in the YAML file."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("the configuration must be a mapping")
        return cls(
            homeserver=_text(data, "homeserver"),
            botname=_text(data, "botname"),
            username=_text(data, "username"),
            password=_text(data, "password"),
            loglevel=_text(data, "loglevel"),
            database=DatabaseConfig.from_dict(data.get("database")),
        )


def load_config(path: str | Path) -> Config:
    """Read and parse a YAML configuration file."""
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    return Config.from_dict(data)