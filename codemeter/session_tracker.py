"""Per-IDE-instance session segmenter.

Every change of (project, focused, idle) closes the current session segment
and opens a new one, so each segment describes exactly one stable state.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Callable, Optional, Protocol

from codemeter import config
from codemeter.date_utils import now_ms
from codemeter.db.repositories.projects import ProjectRepository
from codemeter.db.repositories.sessions import SessionRepository
from codemeter.errors import best_effort_async
from codemeter.models import Project, ProjectSession
from codemeter.project_identity import ProjectIdentity, compute_project_identity

logger = logging.getLogger("codemeter.sessions")

IDE_TYPES = ("vscode", "cursor", "antigravity", "unknown")


class HostSignal(str, enum.Enum):
    WORKSPACE_CHANGED = "workspace_changed"
    FOCUS_GAINED = "focus_gained"
    FOCUS_LOST = "focus_lost"
    DOCUMENT_CHANGED = "document_changed"
    ACTIVE_EDITOR_CHANGED = "active_editor_changed"


class WorkspaceHost(Protocol):
    """What the segmenter needs to know about the host editor."""

    def workspace_folders(self) -> list[str]: ...

    def is_focused(self) -> bool: ...


def detect_ide_type(app_name: str) -> str:
    name = (app_name or "").lower()
    if "cursor" in name:
        return "cursor"
    if "antigravity" in name:
        return "antigravity"
    if "code" in name:
        return "vscode"
    return "unknown"


class ProjectSessionTracker:
    def __init__(
        self,
        host: WorkspaceHost,
        sessions: SessionRepository,
        projects: ProjectRepository,
        *,
        instance_id: Optional[str] = None,
        ide_type: str = "unknown",
        idle_ms: int = config.IDLE_MS,
        idle_poll_ms: int = config.IDLE_POLL_MS,
        stale_session_hours: int = config.STALE_SESSION_HOURS,
        clock: Callable[[], int] = now_ms,
        identity_fn: Callable[[str], ProjectIdentity] = compute_project_identity,
    ):
        self.host = host
        self.sessions = sessions
        self.projects = projects
        self.instance_id = instance_id or str(uuid.uuid4())
        self.ide_type = ide_type if ide_type in IDE_TYPES else "unknown"
        self.idle_ms = max(config.MIN_IDLE_MS, idle_ms)
        self.idle_poll_ms = idle_poll_ms
        self.stale_session_hours = stale_session_hours
        self._clock = clock
        self._identity_fn = identity_fn

        self.current: Optional[ProjectSession] = None
        self.focused = False
        self.idle = False
        self.last_activity_ms = 0
        self._lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        now = self._clock()
        self.focused = bool(self.host.is_focused())
        self.last_activity_ms = now
        self.idle = False
        if self.stale_session_hours > 0:
            await best_effort_async(
                "close stale sessions",
                self.sessions.close_stale_sessions,
                now,
                self.stale_session_hours * 60 * 60 * 1000,
                self.instance_id,
            )
        async with self._lock:
            await self._ensure_session(now)
        logger.info("Session tracker started (instance=%s ide=%s)", self.instance_id, self.ide_type)

    def start_idle_poll(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._idle_loop())

    async def dispose(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        async with self._lock:
            await best_effort_async("close session on dispose", self._close_current, self._clock())
        logger.info("Session tracker disposed (instance=%s)", self.instance_id)

    # ── Host signals ────────────────────────────────────────────────

    async def handle(self, signal: HostSignal) -> None:
        if signal == HostSignal.WORKSPACE_CHANGED:
            await self.on_workspace_changed()
        elif signal == HostSignal.FOCUS_GAINED:
            await self.on_focus_changed(True)
        elif signal == HostSignal.FOCUS_LOST:
            await self.on_focus_changed(False)
        else:
            await self.on_activity()

    async def on_workspace_changed(self) -> None:
        async with self._lock:
            await self._ensure_session(self._clock())

    async def on_focus_changed(self, focused: bool) -> None:
        async with self._lock:
            now = self._clock()
            previous = (self.focused, self.idle)
            self.focused = bool(focused)
            self._touch(now)
            if (self.focused, self.idle) != previous:
                await self._rotate(now, "focus changed")

    async def on_activity(self) -> None:
        async with self._lock:
            now = self._clock()
            was_idle = self.idle
            self._touch(now)
            if was_idle:
                await self._rotate(now, "activity resumed")

    async def check_idle(self, now: Optional[int] = None) -> bool:
        """Flip to idle once the timeout has elapsed. Returns True when a rotation happened."""
        async with self._lock:
            now = self._clock() if now is None else now
            if self.idle or now - self.last_activity_ms < self.idle_ms:
                return False
            self.idle = True
            await self._rotate(now, "idle timeout")
            return True

    # ── Internals ───────────────────────────────────────────────────

    def _touch(self, now: int) -> None:
        self.last_activity_ms = now
        self.idle = False

    async def _idle_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.idle_poll_ms / 1000.0)
                try:
                    await self.check_idle()
                except Exception as exc:
                    logger.error("Idle check failed: %s", exc)
        except asyncio.CancelledError:
            logger.debug("Idle poll cancelled")
            raise

    async def _ensure_session(self, now: int) -> None:
        folders = [f for f in self.host.workspace_folders() if f]
        if not folders:
            if self.current is not None:
                logger.info("Workspace closed; ending session %s", self.current.id)
            await self._close_current(now)
            return

        identity = self._identity_fn(folders[0])
        if self.current is not None and self.current.projectKey == identity.projectKey:
            return

        now = await self._close_current(now)
        await self._upsert_project(identity, now)
        await self._open(identity.projectKey, folders, now)

    async def _upsert_project(self, identity: ProjectIdentity, now: int) -> None:
        existing = await self.projects.get_by_key(identity.projectKey)
        await self.projects.create(
            Project(
                projectKey=identity.projectKey,
                displayName=identity.displayName,
                gitRemote=identity.gitRemote,
                workspacePath=identity.workspacePath,
                createdAt=existing.createdAt if existing else now,
                lastActiveAt=now,
            )
        )

    async def _open(self, project_key: str, folders: list[str], now: int) -> None:
        session = ProjectSession(
            id=str(uuid.uuid4()),
            projectKey=project_key,
            workspaceFolders=list(folders),
            startMs=now,
            focused=self.focused,
            idle=self.idle,
            instanceId=self.instance_id,
            ideType=self.ide_type,
        )
        await self.sessions.create(session)
        self.current = session
        logger.debug(
            "Opened session %s for %s (focused=%s idle=%s)",
            session.id, project_key, session.focused, session.idle,
        )

    async def _close_current(self, now: int) -> int:
        """Close the open segment and return its end, which is always after its start."""
        if self.current is None:
            return now
        session, self.current = self.current, None
        end_ms = max(now, session.startMs + 1)
        await self.sessions.update_end_time(session.id, end_ms)
        return end_ms

    async def _rotate(self, now: int, reason: str) -> None:
        current = self.current
        if current is None:
            await self._ensure_session(now)
            return
        if now <= current.startMs:
            # Segment opened this millisecond; keep startMs < endMs by patching it in place.
            await best_effort_async(
                "update session flags", self.sessions.update_flags, current.id, self.focused, self.idle
            )
            self.current = current.model_copy(update={"focused": self.focused, "idle": self.idle})
            return
        logger.debug("Rotating session %s: %s", current.id, reason)
        await self._close_current(now)
        await self._open(current.projectKey, current.workspaceFolders, now)
