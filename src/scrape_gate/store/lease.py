"""File-based exclusive run lease with heartbeat and stale reclaim.

Only one invocation may hold the lease at a time. The lease file carries the
holder identity and a heartbeat timestamp; a lease whose heartbeat is older
than the configured ceiling is considered abandoned (the holder crashed or
was killed) and the next invocation reclaims it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import os
from pathlib import Path
import socket
from typing import Any
import uuid

from scrape_gate.errors import LeaseError, LeaseHeldError
from scrape_gate.logging import get_logger

NowFn = Callable[[], datetime]

logger = get_logger(__name__)


@dataclass(frozen=True)
class LeaseInfo:
    holder_id: str | None
    pid: int | None = None
    hostname: str | None = None
    acquired_at: datetime | None = None
    heartbeat_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "holder_id": self.holder_id,
            "pid": self.pid,
            "hostname": self.hostname,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "heartbeat_at": self.heartbeat_at.isoformat() if self.heartbeat_at else None,
        }


@dataclass(frozen=True)
class LeaseAcquisition:
    info: LeaseInfo
    reclaimed_from: LeaseInfo | None = None


@dataclass(frozen=True)
class _LeaseSnapshot:
    raw: str
    info: LeaseInfo
    modified_at: datetime


class FileLease:
    """Exclusive lease backed by an ``O_EXCL``-created file."""

    def __init__(
        self,
        path: str | Path,
        *,
        stale_after_seconds: int,
        holder_id: str | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        if stale_after_seconds <= 0:
            raise LeaseError("stale_after_seconds must be > 0.")
        self._path = Path(path)
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._now = now_fn or (lambda: datetime.now(timezone.utc))
        self._hostname = socket.gethostname()
        self.holder_id = holder_id or f"{self._hostname}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._held: LeaseInfo | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held is not None

    def acquire(self) -> LeaseAcquisition:
        """Take the lease, reclaiming a stale one; raise LeaseHeldError when live."""
        if self._held is not None:
            return LeaseAcquisition(info=self._held)

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LeaseError(f"Could not create run lease directory '{self._path.parent}': {exc}.") from exc

        reclaimed: LeaseInfo | None = None
        for _attempt in range(3):
            now = self._utc_now()
            info = LeaseInfo(
                holder_id=self.holder_id,
                pid=os.getpid(),
                hostname=self._hostname,
                acquired_at=now,
                heartbeat_at=now,
            )
            try:
                fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                snapshot = self._read_snapshot(self._path)
                if snapshot is None:
                    continue
                if not self.is_stale(snapshot.info, modified_at=snapshot.modified_at):
                    raise LeaseHeldError(
                        f"Run lease '{self._path}' is held by {snapshot.info.holder_id or 'an unknown holder'}.",
                        holder=snapshot.info.to_dict(),
                    )
                self._reclaim(snapshot)
                reclaimed = snapshot.info
                logger.warning(
                    "stale lease reclaimed path=%s previous_holder=%s heartbeat_at=%s",
                    self._path,
                    snapshot.info.holder_id,
                    snapshot.info.heartbeat_at.isoformat() if snapshot.info.heartbeat_at else None,
                )
                continue
            except OSError as exc:
                raise LeaseError(f"Could not create run lease '{self._path}': {exc}.") from exc

            try:
                with os.fdopen(fd, "w", encoding="utf-8") as stream:
                    stream.write(json.dumps(info.to_dict(), sort_keys=True))
                    stream.flush()
                    os.fsync(stream.fileno())
            except OSError as exc:
                self._unlink_quietly(self._path)
                raise LeaseError(f"Could not write run lease '{self._path}': {exc}.") from exc

            self._held = info
            return LeaseAcquisition(info=info, reclaimed_from=reclaimed)

        raise LeaseHeldError(f"Run lease '{self._path}' changed hands repeatedly while acquiring.")

    def heartbeat(self) -> None:
        """Refresh the heartbeat of a lease this instance holds."""
        if self._held is None:
            raise LeaseError("Cannot heartbeat a lease that is not held.")
        current = self._read_snapshot(self._path)
        if current is None or current.info.holder_id != self.holder_id:
            raise LeaseError(f"Run lease '{self._path}' is no longer held by {self.holder_id}.")

        updated = LeaseInfo(
            holder_id=self._held.holder_id,
            pid=self._held.pid,
            hostname=self._held.hostname,
            acquired_at=self._held.acquired_at,
            heartbeat_at=self._utc_now(),
        )
        temp_path = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        try:
            temp_path.write_text(json.dumps(updated.to_dict(), sort_keys=True), encoding="utf-8")
            os.replace(temp_path, self._path)
        except OSError as exc:
            self._unlink_quietly(temp_path)
            raise LeaseError(f"Could not refresh run lease '{self._path}': {exc}.") from exc
        self._held = updated

    def release(self) -> bool:
        """Remove the lease file if this instance still owns it."""
        if self._held is None:
            return False
        self._held = None
        current = self._read_snapshot(self._path)
        if current is None or current.info.holder_id != self.holder_id:
            logger.warning("lease release skipped path=%s reason=not_owner", self._path)
            return False
        return self._unlink_quietly(self._path)

    def force_release(self) -> bool:
        """Remove the lease regardless of owner. Only for stuck leases."""
        removed = self._unlink_quietly(self._path)
        if removed:
            logger.warning("lease force released path=%s", self._path)
        return removed

    def current_holder(self) -> LeaseInfo | None:
        snapshot = self._read_snapshot(self._path)
        return snapshot.info if snapshot is not None else None

    def is_stale(self, info: LeaseInfo, *, modified_at: datetime | None = None) -> bool:
        reference = info.heartbeat_at or modified_at
        if reference is None:
            return True
        return self._utc_now() - reference > self.stale_after

    def holder_is_stale(self) -> bool | None:
        snapshot = self._read_snapshot(self._path)
        if snapshot is None:
            return None
        return self.is_stale(snapshot.info, modified_at=snapshot.modified_at)

    def __enter__(self) -> FileLease:
        self.acquire()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.release()
        return False

    def _reclaim(self, observed: _LeaseSnapshot) -> None:
        tombstone = self._path.with_name(f"{self._path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self._path, tombstone)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LeaseError(f"Could not reclaim stale run lease '{self._path}': {exc}.") from exc

        moved = self._read_snapshot(tombstone)
        if moved is not None and moved.raw != observed.raw:
            # A concurrent reclaimer already replaced the stale lease; put theirs back.
            try:
                os.link(tombstone, self._path)
            except FileExistsError:
                pass
            except OSError as exc:
                raise LeaseError(f"Could not restore run lease '{self._path}': {exc}.") from exc
            finally:
                self._unlink_quietly(tombstone)
            raise LeaseHeldError(
                f"Run lease '{self._path}' was reclaimed by {moved.info.holder_id} first.",
                holder=moved.info.to_dict(),
            )
        self._unlink_quietly(tombstone)

    def _read_snapshot(self, path: Path) -> _LeaseSnapshot | None:
        try:
            raw = path.read_text(encoding="utf-8")
            modified_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LeaseError(f"Could not read run lease '{path}': {exc}.") from exc
        return _LeaseSnapshot(raw=raw, info=_parse_lease_info(raw), modified_at=modified_at)

    def _utc_now(self) -> datetime:
        value = self._now()
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def _unlink_quietly(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("lease file removal failed path=%s error=%s", path, exc)
            return False
        return True


def _parse_lease_info(raw: str) -> LeaseInfo:
    # A lease created but not yet written reads as empty; staleness then falls back to mtime.
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return LeaseInfo(holder_id=None)
    if not isinstance(data, dict):
        return LeaseInfo(holder_id=None)

    pid = data.get("pid")
    return LeaseInfo(
        holder_id=data.get("holder_id") if isinstance(data.get("holder_id"), str) else None,
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        hostname=data.get("hostname") if isinstance(data.get("hostname"), str) else None,
        acquired_at=_parse_timestamp(data.get("acquired_at")),
        heartbeat_at=_parse_timestamp(data.get("heartbeat_at")),
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
