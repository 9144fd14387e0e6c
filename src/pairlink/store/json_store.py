"""Durable store persisted to a JSON file.

The whole store is rewritten on every commit through a temp file and
atomic rename, with owner-only permissions. Suitable for a single
process; the change feed only reaches subscribers in the same process.
"""

import contextlib
import json
import logging
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pairlink.errors import StoreUnavailableError
from pairlink.store.base import TABLE_KEYS
from pairlink.store.memory import MemoryStore

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class JsonFileStore(MemoryStore):
    """MemoryStore that survives restarts by persisting to a JSON file."""

    def __init__(
        self,
        path: Path,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize store. Call load() before use.

        Args:
            path: Path to JSON file for persistence.
            clock: Injectable UTC clock for created_at.
        """
        super().__init__(clock=clock)
        self.path = Path(path).expanduser()

    async def load(self) -> None:
        """Load tables from file, if it exists.

        Raises:
            StoreUnavailableError: If the file exists but cannot be read.
        """
        if not self.path.exists():
            logger.debug(f"No store file at {self.path}")
            return

        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse store file: {e}")
            raise StoreUnavailableError(f"Corrupt store file: {self.path}") from e
        except OSError as e:
            logger.error(f"Failed to read store file: {e}")
            raise StoreUnavailableError(f"Cannot read store file: {self.path}") from e

        tables = data.get("tables", {})
        for table, key in TABLE_KEYS.items():
            rows = {}
            for row in tables.get(table, []):
                if not isinstance(row, dict) or row.get(key) is None:
                    logger.warning(f"Skipping malformed {table} row")
                    continue
                rows[row[key]] = row
            self._tables[table] = rows
            self._sequences[table] = int(data.get("sequences", {}).get(table, 0))

        self._timestamps.last = data.get("last_timestamp")

        logger.debug(
            f"Loaded {sum(len(rows) for rows in self._tables.values())} rows"
            f" from {self.path}"
        )

    def _snapshot(self) -> dict:
        return {
            "version": FORMAT_VERSION,
            "tables": {
                table: list(rows.values()) for table, rows in self._tables.items()
            },
            "sequences": dict(self._sequences),
            "last_timestamp": self._timestamps.last,
        }

    async def _commit(self) -> None:
        """Write all tables with an atomic rename.

        Raises:
            StoreUnavailableError: If the file cannot be written.
        """
        tmp_path = self.path.with_suffix(f".{secrets.token_hex(4)}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = json.dumps(self._snapshot(), indent=2) + "\n"

            # Owner read/write only
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, data.encode())
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save store: {e}")
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise StoreUnavailableError(f"Cannot write store file: {self.path}") from e
