"""
cache/store.py -- SQLite-backed registry of issued valuations.

Every successful valuation handed to a customer is recorded here with its
expiry, so a later "accept this offer" request can be checked against what was
actually issued instead of trusting the client's numbers. Entries live for the
valuation TTL (default 30 days) and are dropped on read once expired unless
the caller asks for expired rows explicitly.

Usage:
    cache = ValuationCache()
    cache.set(valuation)                        # ValuationResponse
    offer = cache.get("VAL-1718000000000-AB12CD")
    cache.purge_expired()                       # call periodically to trim old entries
"""

import json
import logging
import sqlite3
import time
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Union

from core.models import ConditionGrade, ValuationBreakdown, ValuationResponse, parse_timestamp

logger = logging.getLogger("equipped.cache")

_DEFAULT_DB = Path(__file__).parent / "valuations.db"
_DEFAULT_TTL = 60 * 60 * 24 * 30  # 30 days in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS valuations (
    valuation_id  TEXT PRIMARY KEY,
    serial        TEXT NOT NULL,
    data          TEXT NOT NULL,
    cached_at     REAL NOT NULL,
    expires_at    REAL NOT NULL
);
"""


def _expiry_epoch(valuation: ValuationResponse, ttl: int) -> Optional[float]:
    """The valuation's own expires_at, capped at now + TTL. None if it is unparseable."""
    try:
        dt = parse_timestamp(valuation.expires_at)
    except (TypeError, ValueError):
        return None
    return min(dt.timestamp(), time.time() + ttl)


def _from_dict(data: dict) -> ValuationResponse:
    breakdown = data.get("breakdown")
    data["breakdown"] = ValuationBreakdown(**breakdown) if breakdown else None
    data["condition_grade"] = ConditionGrade(data["condition_grade"])
    return ValuationResponse(**data)


class ValuationCache:
    def __init__(self, db_path: Union[Path, str] = _DEFAULT_DB, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, valuation_id: str, include_expired: bool = False) -> Optional[ValuationResponse]:
        """Return the issued valuation, or None if unknown (or expired, unless include_expired)."""
        row = self._conn.execute(
            "SELECT data, expires_at FROM valuations WHERE valuation_id = ?",
            (valuation_id,),
        ).fetchone()
        if row is None:
            return None
        data, expires_at = row
        if not include_expired and time.time() > expires_at:
            self._delete(valuation_id)
            return None
        return _from_dict(json.loads(data))

    def set(self, valuation: ValuationResponse) -> None:
        """Record an issued valuation. Failed or undated valuations are not registered."""
        if not valuation.success or not valuation.valuation_id:
            return
        expires_at = _expiry_epoch(valuation, self.ttl)
        if expires_at is None:
            logger.warning("Not registering %s: bad expires_at %r", valuation.valuation_id, valuation.expires_at)
            return
        self._conn.execute(
            "INSERT OR REPLACE INTO valuations (valuation_id, serial, data, cached_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                valuation.valuation_id,
                valuation.serial.upper(),
                json.dumps(asdict(valuation)),
                time.time(),
                expires_at,
            ),
        )
        self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired valuations. Returns number of rows removed."""
        cursor = self._conn.execute("DELETE FROM valuations WHERE expires_at < ?", (time.time(),))
        self._conn.commit()
        return cursor.rowcount

    def _delete(self, valuation_id: str) -> None:
        self._conn.execute("DELETE FROM valuations WHERE valuation_id = ?", (valuation_id,))
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()
