"""File-based run lock that keeps destructive runs from overlapping."""
from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from invoice_recon.core.errors import LockHeldError

logger = logging.getLogger(__name__)


class RunLock:
    """Exclusive lock backed by a JSON file with owner and timestamp.

    A lock older than ``timeout`` seconds is treated as abandoned and replaced.
    Use it as a context manager around submission runs and mirror rebuilds.
    """

    def __init__(self, name: str, lock_dir: Path = Path("."), timeout: int = 3600) -> None:
        self.name = name
        self.timeout = timeout
        self.path = Path(lock_dir) / f".{name}.lock.json"
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._held = False

    def acquire(self, metadata: Optional[Dict[str, Any]] = None) -> None:
        existing = self.info()
        if existing and not self._is_stale(existing):
            raise LockHeldError(
                f"Lock {self.name!r} is held by {existing.get('owner')} since {existing.get('timestamp')}"
            )
        if existing:
            logger.warning("Replacing stale lock %s held by %s", self.name, existing.get("owner"))
            self.path.unlink(missing_ok=True)

        payload = {
            "owner": self.owner,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "timeout": self.timeout,
            "metadata": metadata or {},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # O_EXCL makes creation atomic when two processes race for the lock.
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise LockHeldError(f"Lock {self.name!r} was taken concurrently") from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        self._held = True
        logger.info("Acquired lock %s", self.name)

    def release(self) -> None:
        if not self._held:
            return
        existing = self.info()
        if existing and existing.get("owner") == self.owner:
            self.path.unlink(missing_ok=True)
            logger.info("Released lock %s", self.name)
        else:
            logger.warning("Lock %s was taken over before release", self.name)
        self._held = False

    def info(self) -> Optional[Dict[str, Any]]:
        try:
            with self.path.open(encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable lock file %s; treating as stale", self.path)
            return {"owner": "unknown", "timestamp": "1970-01-01T00:00:00+00:00"}

    def _is_stale(self, existing: Dict[str, Any]) -> bool:
        try:
            stamp = datetime.fromisoformat(existing.get("timestamp", ""))
        except ValueError:
            return True
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - stamp >= timedelta(seconds=self.timeout)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
