"""Append-only JSON-lines record store shared by every IDE process on the machine.

Layout inside ``data_dir``, per kind:

* ``<kind>.log``            one JSON object per line, appended without locking
* ``<kind>.snapshot.json``  canonical records written by the last compaction
* ``<kind>.compact.lock``   present while a process is compacting ``<kind>``

plus ``index.cost_by_project_by_day.json``, rebuilt after compacting events or
attributions.

Appends rely on O_APPEND atomicity for small writes. Everything else that
replaces a file goes through a temp file and ``os.replace``, so readers never
see a half-written file and never need a lock.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional

from codemeter import config
from codemeter.date_utils import now_ms
from codemeter.db.derived import COST_BY_PROJECT_BY_DAY, build_cost_by_project_by_day
from codemeter.db.reducers import ALL_KINDS, ATTRIBUTIONS, DEFAULT_REDUCERS, EVENTS, Reducer, entities
from codemeter.observability import record_compaction, start_span

logger = logging.getLogger("codemeter.store")

_O_BINARY = getattr(os, "O_BINARY", 0)


def encode_record(record: Any) -> bytes:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class LogStore:
    """Durable per-kind record log with lock-protected compaction."""

    def __init__(
        self,
        data_dir: Path,
        reducers: Optional[dict[str, Reducer]] = None,
        lock_stale_ms: int = config.LOCK_STALE_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.data_dir = Path(data_dir)
        self.reducers = dict(reducers or DEFAULT_REDUCERS)
        self.lock_stale_ms = lock_stale_ms
        self._clock = clock
        self._append_lock = asyncio.Lock()

    # ── Paths ───────────────────────────────────────────────────────

    def _check_kind(self, kind: str) -> None:
        if kind not in self.reducers:
            raise ValueError(f"Unknown store kind: {kind}")

    def log_path(self, kind: str) -> Path:
        return self.data_dir / f"{kind}.log"

    def snapshot_path(self, kind: str) -> Path:
        return self.data_dir / f"{kind}.snapshot.json"

    def lock_path(self, kind: str) -> Path:
        return self.data_dir / f"{kind}.compact.lock"

    def derived_path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    # ── Public async API ────────────────────────────────────────────

    async def append(self, kind: str, record: dict) -> None:
        """Append one record. Appends from this process land in call order."""
        self._check_kind(kind)
        async with self._append_lock:
            await asyncio.to_thread(self._append_sync, kind, record)

    async def read_all(self, kind: str) -> list[dict]:
        """All records for ``kind`` in append order (not yet merged)."""
        self._check_kind(kind)
        return await asyncio.to_thread(self._read_all_sync, kind)

    async def read_current(self, kind: str) -> list[dict]:
        """Canonical records for ``kind`` after applying its merge rule."""
        records = await self.read_all(kind)
        return self.reducers[kind](records)

    async def compact(self, kind: str) -> bool:
        """Compact ``kind``. Returns False when skipped because another process holds the lock."""
        self._check_kind(kind)
        t0 = time.monotonic()
        with start_span("codemeter.store.compact", {"kind": kind}):
            try:
                compacted = await asyncio.to_thread(self._compact_sync, kind)
            except Exception:
                record_compaction(kind, "failed", (time.monotonic() - t0) * 1000)
                raise
        record_compaction(kind, "compacted" if compacted else "skipped", (time.monotonic() - t0) * 1000)
        return compacted

    async def compact_all(self) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for kind in ALL_KINDS:
            if kind in self.reducers:
                results[kind] = await self.compact(kind)
        return results

    async def rebuild_derived_indexes(self) -> None:
        await asyncio.to_thread(self._rebuild_derived_sync)

    async def read_derived(self, name: str, fresh_for: tuple[str, ...] = ()) -> Optional[dict]:
        """Load a derived index, or None if missing, corrupt, or older than any ``fresh_for`` log."""
        return await asyncio.to_thread(self._read_derived_sync, name, fresh_for)

    # ── Append ──────────────────────────────────────────────────────

    def _append_sync(self, kind: str, record: dict) -> None:
        line = encode_record(record) + b"\n"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.log_path(kind), os.O_RDWR | os.O_CREAT | os.O_APPEND | _O_BINARY, 0o644)
        try:
            # A crash can leave a torn last line; never glue a new record onto it.
            if os.fstat(fd).st_size > 0:
                os.lseek(fd, -1, os.SEEK_END)
                if os.read(fd, 1) != b"\n":
                    line = b"\n" + line
            _write_all(fd, line)
        finally:
            os.close(fd)

    def _append_raw_sync(self, path: Path, data: bytes) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND | _O_BINARY, 0o644)
        try:
            _write_all(fd, data)
        finally:
            os.close(fd)

    # ── Read ────────────────────────────────────────────────────────

    @staticmethod
    def _encode_lines(records: list[dict]) -> bytes:
        return b"".join(encode_record(r) + b"\n" for r in records)

    @staticmethod
    def _scan(raw: bytes, kind: str) -> list[dict]:
        records: list[dict] = []
        corrupt = 0
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except ValueError:
                corrupt += 1
                logger.debug("Skipping unparsable %s line (%d bytes)", kind, len(line))
                continue
            if not isinstance(parsed, dict):
                corrupt += 1
                continue
            records.append(parsed)
        if corrupt:
            logger.warning("Skipped %d corrupt line(s) while reading %s", corrupt, kind)
        return records

    def _load_snapshot(self, kind: str) -> Optional[list[dict]]:
        try:
            parsed = json.loads(self.snapshot_path(kind).read_bytes())
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning("Ignoring corrupt snapshot for %s", kind)
            return None
        if not isinstance(parsed, list) or not all(isinstance(r, dict) for r in parsed):
            logger.warning("Ignoring malformed snapshot for %s", kind)
            return None
        return parsed

    def _records_from(self, kind: str, raw: Optional[bytes]) -> list[dict]:
        snapshot = self._load_snapshot(kind)
        if raw is None:
            return snapshot or []
        if snapshot is not None:
            prefix = self._encode_lines(snapshot)
            # The snapshot is only trusted while the log still starts with it.
            if raw.startswith(prefix):
                return snapshot + self._scan(raw[len(prefix):], kind)
            logger.debug("Snapshot for %s does not match log; scanning log", kind)
        return self._scan(raw, kind)

    def _read_all_sync(self, kind: str) -> list[dict]:
        try:
            raw = self.log_path(kind).read_bytes()
        except FileNotFoundError:
            raw = None
        return self._records_from(kind, raw)

    # ── Compaction ──────────────────────────────────────────────────

    def _clear_stale_lock(self, kind: str) -> None:
        lock = self.lock_path(kind)
        try:
            age_ms = self._clock() - int(lock.stat().st_mtime * 1000)
        except FileNotFoundError:
            return
        if age_ms <= self.lock_stale_ms:
            return
        try:
            lock.unlink()
            logger.warning("Removed stale compaction lock for %s (age %dms)", kind, age_ms)
        except FileNotFoundError:
            pass

    def _acquire_lock(self, kind: str) -> bool:
        try:
            fd = os.open(self.lock_path(kind), os.O_CREAT | os.O_EXCL | os.O_WRONLY | _O_BINARY, 0o644)
        except FileExistsError:
            return False
        try:
            _write_all(fd, encode_record({"pid": os.getpid(), "createdAt": self._clock()}))
        finally:
            os.close(fd)
        return True

    def _release_lock(self, kind: str) -> None:
        try:
            self.lock_path(kind).unlink()
        except FileNotFoundError:
            pass

    def _write_temp(self, target: Path, data: bytes) -> Path:
        fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{target.name}.", suffix=".tmp")
        try:
            _write_all(fd, data)
            os.fsync(fd)
        finally:
            os.close(fd)
        return Path(tmp_name)

    def _replace_with(self, target: Path, data: bytes) -> None:
        tmp = self._write_temp(target, data)
        try:
            os.replace(tmp, target)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def _compact_sync(self, kind: str) -> bool:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._clear_stale_lock(kind)
        if not self._acquire_lock(kind):
            logger.info("Compaction of %s skipped: lock held by another process", kind)
            return False

        log_path = self.log_path(kind)
        tmp_files: list[Path] = []
        logger.info("Compacting %s", kind)
        try:
            if not log_path.exists():
                logger.debug("Nothing to compact for %s", kind)
                return True

            with open(log_path, "rb") as old:
                raw = old.read()
                # Bytes after the last newline may belong to an append still in flight.
                cut = raw.rfind(b"\n") + 1
                records = self._records_from(kind, raw[:cut])
                canonical = self.reducers[kind](records)

                tmp_log = self._write_temp(log_path, self._encode_lines(canonical))
                tmp_files.append(tmp_log)
                tmp_snapshot = self._write_temp(
                    self.snapshot_path(kind),
                    json.dumps(canonical, separators=(",", ":"), ensure_ascii=False).encode("utf-8"),
                )
                tmp_files.append(tmp_snapshot)

                carried = raw[cut:] + old.read()
                if carried:
                    self._append_raw_sync(tmp_log, carried)

                os.replace(tmp_snapshot, self.snapshot_path(kind))
                os.replace(tmp_log, log_path)
                tmp_files.clear()
                late = old.read()

            if late:
                logger.info("Carrying %d late byte(s) into compacted %s log", len(late), kind)
                self._append_raw_sync(log_path, late)

            logger.info("Compacted %s: %d records -> %d", kind, len(records), len(canonical))
            if kind in (EVENTS, ATTRIBUTIONS):
                self._rebuild_derived_sync()
            return True
        except Exception:
            logger.exception("Compaction of %s failed; previous files left in place", kind)
            for tmp in tmp_files:
                tmp.unlink(missing_ok=True)
            raise
        finally:
            self._release_lock(kind)

    # ── Derived indexes ─────────────────────────────────────────────

    def _rebuild_derived_sync(self) -> None:
        events = entities(self.reducers[EVENTS](self._read_all_sync(EVENTS)), "event")
        attributions = entities(self.reducers[ATTRIBUTIONS](self._read_all_sync(ATTRIBUTIONS)), "attribution")
        payload = build_cost_by_project_by_day(events, attributions, self._clock())
        self._replace_with(self.derived_path(COST_BY_PROJECT_BY_DAY), encode_record(payload))
        logger.info("Rebuilt %s from %d events", COST_BY_PROJECT_BY_DAY, len(events))

    def _read_derived_sync(self, name: str, fresh_for: tuple[str, ...]) -> Optional[dict]:
        try:
            payload = json.loads(self.derived_path(name).read_bytes())
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning("Ignoring corrupt derived index %s", name)
            return None
        if not isinstance(payload, dict):
            return None
        generated_at = payload.get("generatedAtMs")
        if not isinstance(generated_at, (int, float)):
            return None
        for kind in fresh_for:
            try:
                modified_ms = int(self.log_path(kind).stat().st_mtime * 1000)
            except FileNotFoundError:
                continue
            if modified_ms > generated_at:
                return None
        return payload
