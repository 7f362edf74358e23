"""Persistence for cases and their collaborators.

``CaseStore`` is the seam the services talk to. ``InMemoryStore`` keeps
everything in process. ``JsonFileStore`` keeps the same state in a single
JSON file. Each write takes an exclusive lock on a sidecar ``.lock`` file,
re-reads the document and saves it atomically, so separate processes
sharing one file see each other's records and version checks.
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from .exceptions import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    CaseNotFoundError,
    ConcurrentModificationError,
    NotificationNotFoundError,
    StoreCorruptedError,
    StoreError,
)
from .schemas import (
    Appointment,
    ApprovalStatus,
    CaseRecord,
    LifecycleEvent,
    Task,
    TransitionApproval,
    TransitionHistory,
    TransitionNotification,
    User,
    UserRole,
)

DEFAULT_STORE_PATH = Path(".caseflow/store.json")


class CaseStore(Protocol):
    """Everything the transition engine reads from or writes to."""

    # Users
    def add_user(self, user: User) -> User: ...
    def get_user(self, user_id: str) -> User | None: ...
    def list_users(self, role: UserRole | None = None) -> list[User]: ...

    # Cases
    def add_case(self, case: CaseRecord) -> CaseRecord: ...
    def get_case(self, case_id: str) -> CaseRecord: ...
    def update_case(self, case: CaseRecord) -> CaseRecord: ...
    def list_cases(self) -> list[CaseRecord]: ...

    # Tasks and appointments
    def create_task(self, task: Task) -> Task: ...
    def list_tasks(self, case_id: str | None = None) -> list[Task]: ...
    def create_appointment(self, appointment: Appointment) -> Appointment: ...
    def list_appointments(self, case_id: str | None = None) -> list[Appointment]: ...

    # Append-only logs
    def append_event(self, event: LifecycleEvent) -> LifecycleEvent: ...
    def list_events(self, case_id: str) -> list[LifecycleEvent]: ...
    def append_history(self, entry: TransitionHistory) -> TransitionHistory: ...
    def list_history(self, case_id: str) -> list[TransitionHistory]: ...

    # Approvals
    def create_approval(self, approval: TransitionApproval) -> TransitionApproval: ...
    def get_approval(self, approval_id: str) -> TransitionApproval: ...
    def decide_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        approver_id: str,
        approver_role: UserRole,
        reason: str | None,
        decided_at: datetime,
    ) -> TransitionApproval: ...
    def list_approvals(self, status: ApprovalStatus | None = None) -> list[TransitionApproval]: ...

    # Notifications
    def create_notification(self, notification: TransitionNotification) -> TransitionNotification: ...
    def list_notifications(self, recipient_id: str | None = None) -> list[TransitionNotification]: ...
    def mark_notification_read(self, notification_id: str, read_at: datetime) -> TransitionNotification: ...


class StoreSnapshot(BaseModel):
    """Serialized form of a whole store."""

    users: list[User] = Field(default_factory=list)
    cases: list[CaseRecord] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    appointments: list[Appointment] = Field(default_factory=list)
    events: list[LifecycleEvent] = Field(default_factory=list)
    history: list[TransitionHistory] = Field(default_factory=list)
    approvals: list[TransitionApproval] = Field(default_factory=list)
    notifications: list[TransitionNotification] = Field(default_factory=list)


class InMemoryStore:
    """Thread-safe in-process store.

    Records go in and come out as deep copies, so callers never share
    mutable state with the store.
    """

    def __init__(self, snapshot: StoreSnapshot | None = None) -> None:
        self._lock = threading.RLock()
        self._load(snapshot)

    def _load(self, snapshot: StoreSnapshot | None) -> None:
        """Replace every record with the contents of ``snapshot``."""
        snap = snapshot or StoreSnapshot()
        self._users = {u.id: u for u in snap.users}
        self._cases = {c.id: c for c in snap.cases}
        self._tasks = {t.id: t for t in snap.tasks}
        self._appointments = {a.id: a for a in snap.appointments}
        self._events = list(snap.events)
        self._history = list(snap.history)
        self._approvals = {a.id: a for a in snap.approvals}
        self._notifications = {n.id: n for n in snap.notifications}

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                users=list(self._users.values()),
                cases=list(self._cases.values()),
                tasks=list(self._tasks.values()),
                appointments=list(self._appointments.values()),
                events=list(self._events),
                history=list(self._history),
                approvals=list(self._approvals.values()),
                notifications=list(self._notifications.values()),
            ).model_copy(deep=True)

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """Hold the store lock around one write."""
        with self._lock:
            yield

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, user: User) -> User:
        with self._writing():
            self._users[user.id] = user.model_copy(deep=True)
            return user.model_copy(deep=True)

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def list_users(self, role: UserRole | None = None) -> list[User]:
        with self._lock:
            return [
                u.model_copy(deep=True)
                for u in self._users.values()
                if role is None or u.role == role
            ]

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def add_case(self, case: CaseRecord) -> CaseRecord:
        with self._writing():
            self._cases[case.id] = case.model_copy(deep=True)
            return case.model_copy(deep=True)

    def get_case(self, case_id: str) -> CaseRecord:
        """Return a copy of the case.

        Raises:
            CaseNotFoundError: If no case has this id.
        """
        with self._lock:
            case = self._cases.get(case_id)
            if case is None:
                raise CaseNotFoundError(case_id)
            return case.model_copy(deep=True)

    def update_case(self, case: CaseRecord) -> CaseRecord:
        """Write ``case`` back if nobody else has written it since it was read.

        The stored version must equal ``case.version``; the written record
        carries ``version + 1``.

        Raises:
            CaseNotFoundError: If no case has this id.
            ConcurrentModificationError: If the stored version moved on.
        """
        with self._writing():
            current = self._cases.get(case.id)
            if current is None:
                raise CaseNotFoundError(case.id)
            if current.version != case.version:
                raise ConcurrentModificationError(case.id, case.version, current.version)
            stored = case.model_copy(deep=True, update={"version": case.version + 1})
            self._cases[case.id] = stored
            return stored.model_copy(deep=True)

    def list_cases(self) -> list[CaseRecord]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._cases.values()]

    # ------------------------------------------------------------------
    # Tasks and appointments
    # ------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        with self._writing():
            self._tasks[task.id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    def list_tasks(self, case_id: str | None = None) -> list[Task]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if case_id is None or t.case_id == case_id
            ]

    def create_appointment(self, appointment: Appointment) -> Appointment:
        with self._writing():
            self._appointments[appointment.id] = appointment.model_copy(deep=True)
            return appointment.model_copy(deep=True)

    def list_appointments(self, case_id: str | None = None) -> list[Appointment]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._appointments.values()
                if case_id is None or a.case_id == case_id
            ]

    # ------------------------------------------------------------------
    # Append-only logs
    # ------------------------------------------------------------------

    def append_event(self, event: LifecycleEvent) -> LifecycleEvent:
        with self._writing():
            self._events.append(event.model_copy(deep=True))
            return event.model_copy(deep=True)

    def list_events(self, case_id: str) -> list[LifecycleEvent]:
        """Return the case's lifecycle events in the order they were logged."""
        with self._lock:
            return [e.model_copy(deep=True) for e in self._events if e.case_id == case_id]

    def append_history(self, entry: TransitionHistory) -> TransitionHistory:
        with self._writing():
            self._history.append(entry.model_copy(deep=True))
            return entry.model_copy(deep=True)

    def list_history(self, case_id: str) -> list[TransitionHistory]:
        with self._lock:
            return [h.model_copy(deep=True) for h in self._history if h.case_id == case_id]

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def create_approval(self, approval: TransitionApproval) -> TransitionApproval:
        with self._writing():
            self._approvals[approval.id] = approval.model_copy(deep=True)
            return approval.model_copy(deep=True)

    def get_approval(self, approval_id: str) -> TransitionApproval:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            return approval.model_copy(deep=True)

    def decide_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        approver_id: str,
        approver_role: UserRole,
        reason: str | None,
        decided_at: datetime,
    ) -> TransitionApproval:
        """Move a pending approval to ``status``; only the first decision wins.

        Raises:
            ApprovalNotFoundError: If no approval has this id.
            ApprovalAlreadyDecidedError: If the approval is no longer pending.
        """
        with self._writing():
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            if approval.status != ApprovalStatus.PENDING:
                raise ApprovalAlreadyDecidedError(approval_id, approval.status.value)
            decided = approval.model_copy(
                deep=True,
                update={
                    "status": status,
                    "approved_by": approver_id,
                    "approved_by_role": approver_role,
                    "decision_reason": reason,
                    "decided_at": decided_at,
                },
            )
            self._approvals[approval_id] = decided
            return decided.model_copy(deep=True)

    def list_approvals(self, status: ApprovalStatus | None = None) -> list[TransitionApproval]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._approvals.values()
                if status is None or a.status == status
            ]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def create_notification(self, notification: TransitionNotification) -> TransitionNotification:
        with self._writing():
            self._notifications[notification.id] = notification.model_copy(deep=True)
            return notification.model_copy(deep=True)

    def list_notifications(self, recipient_id: str | None = None) -> list[TransitionNotification]:
        with self._lock:
            return [
                n.model_copy(deep=True)
                for n in self._notifications.values()
                if recipient_id is None or n.recipient_id == recipient_id
            ]

    def mark_notification_read(self, notification_id: str, read_at: datetime) -> TransitionNotification:
        with self._writing():
            notification = self._notifications.get(notification_id)
            if notification is None:
                raise NotificationNotFoundError(notification_id)
            updated = notification.model_copy(update={"is_read": True, "read_at": read_at})
            self._notifications[notification_id] = updated
            return updated.model_copy(deep=True)


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to one JSON document.

    Every write runs under an exclusive lock on a sidecar ``.lock`` file and
    starts from a fresh read of the document, so separate processes sharing
    the file see each other's records and the case version check is made
    against what is on disk.

    Args:
        path: Location of the store file. Defaults to .caseflow/store.json.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or DEFAULT_STORE_PATH
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        super().__init__(self._read())

    def _read(self) -> StoreSnapshot | None:
        """Load the store file if it exists.

        Raises:
            StoreCorruptedError: If the file contains invalid JSON or schema.
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise StoreCorruptedError(f"Failed to parse {self.path}: {exc}") from exc

        try:
            return StoreSnapshot.model_validate(data)
        except ValidationError as exc:
            raise StoreCorruptedError(
                f"Schema validation failed for {self.path}: {exc}"
            ) from exc

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """Reload from disk, apply one write, then persist it.

        If persisting fails the in-memory records are put back to the state
        that was read, so memory never runs ahead of the file.

        Raises:
            StoreError: If the file cannot be locked or written.
        """
        with self._lock, _file_lock(self.lock_path):
            disk = self._read()
            self._load(disk)
            yield
            try:
                self._save()
            except OSError as exc:
                self._load(disk)
                raise StoreError(f"Failed to write {self.path}: {exc}") from exc

    def save(self) -> None:
        """Write the whole store to disk under the file lock.

        Raises:
            StoreError: If the file cannot be locked or written.
        """
        with self._lock, _file_lock(self.lock_path):
            try:
                self._save()
            except OSError as exc:
                raise StoreError(f"Failed to write {self.path}: {exc}") from exc

    def _save(self) -> None:
        """Atomically write the whole store (write-to-temp + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.snapshot().model_dump_json(indent=2) + "\n"

        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=self.path.parent,
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        try:
            fd.write(payload)
            fd.flush()
            fd.close()
            Path(fd.name).replace(self.path)
        except BaseException:
            fd.close()
            Path(fd.name).unlink(missing_ok=True)
            raise


@contextmanager
def _file_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive OS-level lock on ``lock_path``, blocking until free.

    Raises:
        StoreError: If the lock file cannot be opened or locked.
    """
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as exc:
        raise StoreError(f"Cannot open lock file {lock_path}: {exc}") from exc

    try:
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                import fcntl
                fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise StoreError(f"Cannot lock {lock_path}: {exc}") from exc
        yield
    finally:
        # closing the descriptor releases the lock on every platform
        os.close(fd)
