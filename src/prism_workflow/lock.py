"""Cross-process workspace locking.

One lock record per workspace, created with an atomic exclusive create
(O_CREAT | O_EXCL) so two unrelated processes can never both succeed.
While held, the record is renewed on a fixed cadence by a background
thread; a record whose last renewal is older than its stale threshold is
treated as abandoned (holder crashed) and may be cleared by anyone.

Every change to an existing record runs under a second exclusive-create
file, <lock>.guard, and re-checks the owner token first. A record is only
ever replaced or removed by the process that verified, under the guard,
that it is still the record it judged. Creation needs no guard: it can
only succeed on an empty path.
"""

import asyncio
import os
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError
from rich.console import Console

from .errors import StaleLock
from .models import LockRecord
from .workspace import WorkspaceManager

if TYPE_CHECKING:
    from .timeout import CancellationToken


console = Console()

# Sleep between attempts on a busy guard file
GUARD_POLL_SECONDS = 0.01


def _create_exclusive(path: Path, payload: bytes) -> None:
    """Atomically create path with payload; raises FileExistsError if present."""
    fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    try:
        os.write(fd, payload)
        os.fsync(fd)
    finally:
        os.close(fd)


def _encode(record: LockRecord) -> bytes:
    return record.model_dump_json(indent=2).encode("utf-8")


def _guard_path(lock_path: Path) -> Path:
    return lock_path.with_name(f"{lock_path.name}.guard")


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class LockHandle:
    """A held workspace lock.

    Renews itself in the background until released. If another process
    takes the record over (only possible after we went stale), the handle
    flips to lost and stops renewing.
    """

    def __init__(self, manager: "WorkspaceLockManager", lock_path: Path, record: LockRecord):
        self.manager = manager
        self.lock_path = lock_path
        self.record = record
        self.lost = False
        self.released = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._renew_lock = threading.Lock()

    @property
    def workspace_path(self) -> str:
        return self.record.workspace_path

    @property
    def token(self) -> str:
        return self.record.owner_token

    def is_active(self) -> bool:
        return not (self.lost or self.released)

    def start_renewal(self, interval_seconds: float) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._renew_loop,
            args=(interval_seconds,),
            name=f"prism-lock-renewal-{self.token[:8]}",
            daemon=True,
        )
        self._thread.start()

    def _renew_loop(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                renewed = self.renew()
            except OSError as e:
                console.print(f"[yellow]Lock renewal failed: {e}[/yellow]")
                continue
            if not renewed:
                break

    def renew(self) -> bool:
        """Refresh last_renewed_at on disk.

        Returns:
            False if the handle is no longer the owner of the record
        """
        with self._renew_lock:
            if not self.is_active():
                return False
            with self.manager.guarded(self.lock_path):
                current = self.manager.read_holder_at(self.lock_path)
                if current is None or current.owner_token != self.token:
                    self.lost = True
                    console.print(
                        f"[red]Workspace lock on {self.workspace_path} was taken over by another process[/red]"
                    )
                    return False
                renewed = self.record.model_copy(update={"last_renewed_at": datetime.now()})
                tmp = self.lock_path.with_name(f"{self.lock_path.name}.{self.token[:12]}.tmp")
                try:
                    tmp.write_bytes(_encode(renewed))
                    os.replace(tmp, self.lock_path)
                except OSError as e:
                    console.print(f"[yellow]Lock renewal failed: {e}[/yellow]")
                    try:
                        tmp.unlink()
                    except OSError:
                        pass
                    # Not fatal yet; the next tick retries before the record goes stale
                    return True
            self.record = renewed
            return True

    def assign_session(self, session_id: str) -> bool:
        """Record the owning session once it is known, then renew immediately."""
        with self._renew_lock:
            self.record = self.record.model_copy(update={"owner_session_id": session_id})
        return self.renew()

    def stop_renewal(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def release(self) -> None:
        self.manager.release(self)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class WorkspaceLockManager:
    """Cross-process mutual exclusion over a workspace.

    All operations take the workspace path; the lock record lives at
    <workspace>/.prism/.workspace.lock.
    """

    def __init__(
        self,
        stale_after_seconds: float = 10.0,
        renew_interval_seconds: float = 5.0,
    ):
        """Initialize the lock manager.

        Args:
            stale_after_seconds: Renewal age after which a lock counts as abandoned
            renew_interval_seconds: Renewal cadence while a lock is held
        """
        if renew_interval_seconds >= stale_after_seconds:
            raise ValueError("renew_interval_seconds must be shorter than stale_after_seconds")
        self.stale_after_seconds = stale_after_seconds
        self.renew_interval_seconds = renew_interval_seconds

    # =========================================================================
    # Paths and records
    # =========================================================================

    @staticmethod
    def lock_path(workspace_path: Path) -> Path:
        return WorkspaceManager(workspace_path).lock_file

    @staticmethod
    def read_holder_at(lock_path: Path) -> Optional[LockRecord]:
        """Parse a lock record, or None when missing or unreadable."""
        try:
            return LockRecord.model_validate_json(lock_path.read_bytes())
        except (OSError, ValueError, ValidationError):
            return None

    def read_holder(self, workspace_path: Path) -> Optional[LockRecord]:
        """Current holder of the workspace lock, if the record is readable."""
        return self.read_holder_at(self.lock_path(workspace_path))

    def _inspect(self, lock_path: Path) -> Optional[tuple[Optional[str], float, float]]:
        """(owner token, seconds since renewal, stale threshold), or None when absent."""
        record = self.read_holder_at(lock_path)
        if record is not None:
            return record.owner_token, record.seconds_since_renewal(), record.stale_after_seconds
        # Record half-written or garbled: judge by the file's own mtime
        try:
            mtime = lock_path.stat().st_mtime
        except OSError:
            return None
        return None, time.time() - mtime, self.stale_after_seconds

    def _is_stale_at(self, lock_path: Path) -> bool:
        judged = self._inspect(lock_path)
        if judged is None:
            return False
        _, age, threshold = judged
        return age > threshold

    @contextmanager
    def guarded(self, lock_path: Path):
        """Hold the guard file around a change to an existing lock record.

        The guard is itself an exclusive create. A guard older than the
        stale threshold belongs to a process that died inside its critical
        section and is removed.
        """
        guard = _guard_path(lock_path)
        while True:
            try:
                _create_exclusive(guard, str(os.getpid()).encode("utf-8"))
                break
            except FileExistsError:
                try:
                    age = time.time() - guard.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.stale_after_seconds:
                    _unlink_quietly(guard)
                    continue
                time.sleep(GUARD_POLL_SECONDS)
        try:
            yield
        finally:
            _unlink_quietly(guard)

    # =========================================================================
    # Public operations
    # =========================================================================

    def acquire(self, workspace_path: Path, session_id: Optional[str] = None) -> Optional[LockHandle]:
        """Try to take the workspace lock without blocking.

        A stale lock is cleared and acquisition retried once. A fresh lock
        held by someone else returns None; the caller decides whether to wait.

        Args:
            workspace_path: Workspace to lock
            session_id: Session that will own the lock (informational)

        Returns:
            A renewing LockHandle, or None if a live holder owns the workspace
        """
        workspace = WorkspaceManager(workspace_path)
        workspace.ensure_structure()
        lock_path = workspace.lock_file

        for _ in range(2):
            now = datetime.now()
            record = LockRecord(
                workspace_path=str(workspace.project_path),
                owner_session_id=session_id,
                owner_process_id=os.getpid(),
                owner_token=uuid.uuid4().hex,
                acquired_at=now,
                last_renewed_at=now,
                stale_after_seconds=self.stale_after_seconds,
            )
            try:
                _create_exclusive(lock_path, _encode(record))
            except FileExistsError:
                judged = self._inspect(lock_path)
                if judged is None:
                    # Released between our create and the inspection
                    continue
                stale_token, age, threshold = judged
                if age > threshold:
                    stale = StaleLock(str(workspace.project_path), age)
                    console.print(f"[yellow]{stale.message}, clearing...[/yellow]")
                    self._clear_stale_at(lock_path, stale_token)
                    continue
                return None

            handle = LockHandle(self, lock_path, record)
            handle.start_renewal(self.renew_interval_seconds)
            return handle

        return None

    def release(self, handle: LockHandle) -> None:
        """Stop renewing and remove the record if we still own it."""
        if handle.released:
            return
        handle.stop_renewal()
        with handle._renew_lock:
            handle.released = True
            with self.guarded(handle.lock_path):
                current = self.read_holder_at(handle.lock_path)
                if current is None or current.owner_token != handle.token:
                    # Taken over after we went stale; the record is not ours to delete
                    return
                _unlink_quietly(handle.lock_path)

    def is_held(self, workspace_path: Path) -> bool:
        """True when a non-stale lock record exists."""
        lock_path = self.lock_path(workspace_path)
        if not lock_path.exists():
            return False
        return not self._is_stale_at(lock_path)

    def is_stale(self, workspace_path: Path) -> bool:
        """True when a lock record exists whose last renewal is too old."""
        return self._is_stale_at(self.lock_path(workspace_path))

    def clear_stale(self, workspace_path: Path) -> bool:
        """Remove the lock record if (and only if) it is stale.

        Returns:
            True if no lock remains afterwards
        """
        lock_path = self.lock_path(workspace_path)
        judged = self._inspect(lock_path)
        if judged is None:
            return True
        stale_token, age, threshold = judged
        if age <= threshold:
            return False
        return self._clear_stale_at(lock_path, stale_token)

    def _clear_stale_at(self, lock_path: Path, stale_token: Optional[str]) -> bool:
        """Remove the record judged stale, if it is still that same stale record.

        Returns:
            True if the judged record is gone afterwards
        """
        with self.guarded(lock_path):
            judged = self._inspect(lock_path)
            if judged is None:
                return True
            token, age, threshold = judged
            if token != stale_token or age <= threshold:
                # Renewed, or cleared and re-acquired by someone else meanwhile
                return False
            _unlink_quietly(lock_path)
            return True

    def wait_for_release(
        self,
        workspace_path: Path,
        timeout_seconds: float,
        poll_interval_seconds: float = 1.0,
    ) -> bool:
        """Block until the lock is free (or stale) or the timeout passes.

        Returns:
            True if the lock was released within the timeout
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            if not self.is_held(workspace_path):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval_seconds, remaining))

    async def wait_for_release_async(
        self,
        workspace_path: Path,
        timeout_seconds: float,
        poll_interval_seconds: float = 1.0,
        token: Optional["CancellationToken"] = None,
    ) -> bool:
        """Async variant of wait_for_release that also stops on cancellation."""
        deadline = time.monotonic() + timeout_seconds
        while True:
            if not self.is_held(workspace_path):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if token is not None:
                if await token.sleep(min(poll_interval_seconds, remaining)):
                    return False
            else:
                await asyncio.sleep(min(poll_interval_seconds, remaining))


def describe_holder(record: Optional[LockRecord]) -> dict:
    """Display-friendly view of a lock record."""
    if record is None:
        return {"held": False}
    return {
        "held": True,
        "owner_session_id": record.owner_session_id,
        "owner_process_id": record.owner_process_id,
        "acquired_at": record.acquired_at.isoformat(),
        "last_renewed_at": record.last_renewed_at.isoformat(),
        "seconds_since_renewal": round(record.seconds_since_renewal(), 1),
        "stale": record.is_stale(),
    }
