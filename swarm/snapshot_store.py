"""
Snapshot Store — append-only, the only place worker keys live.

Every change to the worker set writes a NEW file; nothing is ever edited
or deleted. Losing a file loses at most that file's view: every other
snapshot still parses on its own and the reconciler unions them all.

Layout:
    <dir>/workers-<created_at ms>.json        (one snapshot per file)
    <dir>/workers-<created_at ms>-<n>.json    (same-millisecond collision)

Writes are atomic: temp file in the same directory → fsync → os.link onto
the first free name (an existing snapshot is never overwritten).
Either the full file is visible or append() raised.
"""

import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Optional

from .identity import Snapshot
from .snapshot_format import SecretCodec, decode_snapshot, encode_snapshot

logger = logging.getLogger("swarm.snapshot_store")

_FILE_RE = re.compile(r"^(?:workers|wallets)-\d+(?:-\d+)?\.json$")


class SnapshotStoreError(Exception):
    pass


class StoreWriteError(SnapshotStoreError):
    """append() did not durably record the snapshot. Treat as fatal for the caller's operation."""
    pass


class StoreReadError(SnapshotStoreError):
    """The store itself can't be read (directory-level failure, not a bad file)."""
    pass


class FileSnapshotStore:
    """
    Usage:
        store = FileSnapshotStore(Path("data/wallet-snapshots"))
        store.append(Snapshot(created_at=time.time(), workers=(...)))
        for snap in store.list_all():    # newest first
            ...
    """

    def __init__(self, directory: Path, codec: Optional[SecretCodec] = None):
        self.directory = Path(directory)
        self.codec = codec or SecretCodec()
        self.directory.mkdir(parents=True, exist_ok=True)

    # ============================================================
    # WRITE
    # ============================================================

    def append(self, snapshot: Snapshot) -> str:
        """Durably write one snapshot. Returns its location (file path)."""
        created_at = snapshot.created_at or time.time()
        try:
            payload = json.dumps(
                encode_snapshot(snapshot, self.codec) | {"created_at": created_at},
                indent=2,
            )
        except (TypeError, ValueError) as e:
            raise StoreWriteError(f"Snapshot not serializable: {e}") from e

        tmp_path_str = ""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path_str = tempfile.mkstemp(
                suffix=".tmp", prefix=".workers-", dir=str(self.directory)
            )
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            target = self._publish(tmp_path_str, int(created_at * 1000))
            self._discard_temp(tmp_path_str)
            tmp_path_str = ""
            self._fsync_dir()
        except OSError as e:
            if tmp_path_str:
                self._discard_temp(tmp_path_str)
            logger.error(f"Snapshot write failed in {self.directory}: {e}")
            raise StoreWriteError(f"Failed to write wallet snapshot: {e}") from e

        logger.info(
            f"Snapshot written: {target.name} "
            f"({len(snapshot.workers)} workers, owner={'yes' if snapshot.owner else 'no'})"
        )
        return str(target)

    def _publish(self, tmp_path: str, stamp_ms: int) -> Path:
        """Hard-link the finished temp file under the first free name. Never overwrites."""
        n = 0
        while True:
            name = f"workers-{stamp_ms}.json" if n == 0 else f"workers-{stamp_ms}-{n}.json"
            candidate = self.directory / name
            try:
                os.link(tmp_path, candidate)
                return candidate
            except FileExistsError:
                n += 1

    def _discard_temp(self, tmp_path: str):
        try:
            os.unlink(tmp_path)
        except OSError as e:
            logger.warning(f"Could not remove temp file {tmp_path}: {e}")

    def _fsync_dir(self):
        try:
            fd = os.open(str(self.directory), os.O_RDONLY)
        except OSError:
            return  # not supported on this platform
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)

    # ============================================================
    # READ
    # ============================================================

    def list_all(self) -> list[Snapshot]:
        """All readable snapshots, newest first. Corrupt files are logged and skipped."""
        try:
            names = sorted(p for p in os.listdir(self.directory) if _FILE_RE.match(p))
        except OSError as e:
            raise StoreReadError(f"Cannot list snapshot directory {self.directory}: {e}") from e

        snapshots: list[Snapshot] = []
        for name in names:
            path = self.directory / name
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                snapshots.append(decode_snapshot(
                    raw,
                    location=str(path),
                    codec=self.codec,
                    fallback_created_at=path.stat().st_mtime,
                ))
            except Exception as e:
                logger.warning(f"Skipping unreadable snapshot {name}: {type(e).__name__}: {e}")

        snapshots.sort(key=lambda s: (s.created_at, s.location), reverse=True)
        return snapshots

    def latest(self) -> Optional[Snapshot]:
        snapshots = self.list_all()
        return snapshots[0] if snapshots else None

    def describe(self) -> list[dict]:
        """Per-file summary for the dashboard. No secrets."""
        return [
            {
                "file": Path(s.location).name,
                "created_at": s.created_at,
                "schema_version": s.schema_version,
                "workers": len(s.workers),
                "has_owner": s.owner is not None,
            }
            for s in self.list_all()
        ]
