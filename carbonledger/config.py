"""Runtime configuration for the carbon ledger."""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from .errors import InvalidInput

DEFAULT_DATABASE_URL = "sqlite:///carbon.db"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class LedgerConfig:
    """Ledger engine configuration."""
    database_url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    busy_timeout: float = 30.0  # seconds a SQLite writer waits for the lock
    reservation_retries: int = 1
    credit_ratio: Decimal = Decimal("1")
    seed_projects: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        if self.busy_timeout <= 0:
            raise InvalidInput("busy_timeout must be positive", busy_timeout=self.busy_timeout)
        if self.reservation_retries < 0:
            raise InvalidInput("reservation_retries must not be negative",
                               reservation_retries=self.reservation_retries)
        if self.credit_ratio < 0:
            raise InvalidInput("credit_ratio must not be negative", credit_ratio=self.credit_ratio)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @classmethod
    def from_env(cls, prefix: str = "CARBONLEDGER_",
                 environ: Optional[Mapping[str, str]] = None) -> "LedgerConfig":
        """Build a config from ``<prefix>DATABASE_URL``, ``<prefix>ECHO``, ..."""
        env = os.environ if environ is None else environ

        def get(name):
            return env.get(prefix + name)

        kwargs = {}
        if get("DATABASE_URL"):
            kwargs["database_url"] = get("DATABASE_URL")
        if get("ECHO") is not None:
            kwargs["echo"] = _parse_bool(prefix + "ECHO", get("ECHO"))
        if get("SEED_PROJECTS") is not None:
            kwargs["seed_projects"] = _parse_bool(prefix + "SEED_PROJECTS", get("SEED_PROJECTS"))
        if get("BUSY_TIMEOUT"):
            kwargs["busy_timeout"] = _parse(prefix + "BUSY_TIMEOUT", get("BUSY_TIMEOUT"), float)
        if get("RESERVATION_RETRIES"):
            kwargs["reservation_retries"] = _parse(
                prefix + "RESERVATION_RETRIES", get("RESERVATION_RETRIES"), int)
        if get("CREDIT_RATIO"):
            kwargs["credit_ratio"] = _parse(prefix + "CREDIT_RATIO", get("CREDIT_RATIO"), Decimal)
        if get("LOG_LEVEL"):
            kwargs["log_level"] = get("LOG_LEVEL").upper()
        return cls(**kwargs)


def _parse(name, raw, kind):
    try:
        return kind(raw)
    except (ValueError, InvalidOperation):
        raise InvalidInput(f"Invalid value for {name}", value=raw) from None


def _parse_bool(name, raw):
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise InvalidInput(f"Invalid boolean for {name}", value=raw)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
