"""
State storage with a single-writer lease.

``StateStore`` is the seam; ``LocalStateStore`` keeps one JSON document per
stack plus a ``.lock`` file that is created exclusively, so two invocations
against the same state cannot both hold the lease.
"""
import json
import logging
import os
import socket
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Iterator, Optional

from stackplan.errors import LockHeldError, StackplanError
from stackplan.models.state import StateSnapshot

logger = logging.getLogger(__name__)


@dataclass
class Lease:
    lease_id: str
    owner: str
    operation: str
    host: str
    pid: int
    acquired_at: float
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at

    def describe(self) -> str:
        started = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.acquired_at))
        return (
            f"lease {self.lease_id} held by {self.owner}@{self.host} (pid {self.pid}) "
            f"for {self.operation} since {started}"
        )


class StateStore(ABC):
    """Abstract persisted mapping from resource address to ResourceState."""

    # seconds between lease renewals while a run is in flight
    renew_interval: float = 60.0

    @abstractmethod
    def read(self) -> StateSnapshot:
        """Return the current snapshot; an empty one if nothing was stored yet."""

    @abstractmethod
    def write(self, snapshot: StateSnapshot, lease: Lease) -> None:
        """Persist ``snapshot``. Fails with LockHeldError unless ``lease`` is current."""

    @abstractmethod
    def acquire(self, owner: str, operation: str) -> Lease:
        pass

    @abstractmethod
    def renew(self, lease: Lease) -> None:
        """Extend ``lease``. Fails with LockHeldError unless it is still current."""

    @abstractmethod
    def release(self, lease: Lease) -> None:
        pass

    @abstractmethod
    def force_unlock(self, lease_id: str) -> None:
        pass

    @contextmanager
    def lock(self, owner: str, operation: str) -> Iterator[Lease]:
        lease = self.acquire(owner, operation)
        try:
            yield lease
        finally:
            self.release(lease)


class LocalStateStore(StateStore):
    def __init__(self, directory: str, stack: str = "default", lease_ttl: float = 3600.0) -> None:
        self.directory = directory
        self.stack = stack
        self.lease_ttl = lease_ttl

    @property
    def state_path(self) -> str:
        return os.path.join(self.directory, f"{self.stack}.state.json")

    @property
    def lock_path(self) -> str:
        return os.path.join(self.directory, f"{self.stack}.lock")

    @property
    def renew_interval(self) -> float:
        return self.lease_ttl / 3

    def read(self) -> StateSnapshot:
        if not os.path.exists(self.state_path):
            return StateSnapshot()
        try:
            with open(self.state_path, encoding="utf-8") as fh:
                return StateSnapshot.from_dict(json.load(fh))
        except (OSError, ValueError) as exc:
            raise StackplanError(f"cannot read state {self.state_path}: {exc}") from exc

    def write(self, snapshot: StateSnapshot, lease: Lease) -> None:
        self.renew(lease)
        snapshot.serial += 1
        self._replace(self.state_path, snapshot.to_dict(), sort_keys=True)
        logger.debug("wrote state serial %d to %s", snapshot.serial, self.state_path)

    def _replace(self, path: str, document: dict, sort_keys: bool = False) -> None:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{self.stack}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(document, fh, indent=2, sort_keys=sort_keys)
                fh.write("\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def current_lease(self) -> Optional[Lease]:
        try:
            with open(self.lock_path, encoding="utf-8") as fh:
                return Lease(**json.load(fh))
        except FileNotFoundError:
            return None
        except (ValueError, TypeError) as exc:
            # A half-written lock file still means someone is (or was) writing it.
            raise LockHeldError(
                f"lock file {self.lock_path} is unreadable ({exc}); "
                "remove it with force-unlock if no other run is active"
            ) from exc

    def acquire(self, owner: str, operation: str) -> Lease:
        os.makedirs(self.directory, exist_ok=True)
        now = time.time()
        lease = Lease(
            lease_id=str(uuid.uuid4()),
            owner=owner,
            operation=operation,
            host=socket.gethostname(),
            pid=os.getpid(),
            acquired_at=now,
            expires_at=now + self.lease_ttl,
        )
        payload = json.dumps(asdict(lease), indent=2).encode("utf-8")

        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                held = self.current_lease()
                if held is None:
                    continue  # released between open and read
                if not held.expired:
                    raise LockHeldError(
                        f"state for stack {self.stack!r} is locked: {held.describe()}",
                        lease=held,
                    )
                logger.warning("taking over expired %s", held.describe())
                self._remove_lock(held.lease_id, only_expired=True)
                continue
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            logger.debug("acquired lease %s for %s", lease.lease_id, operation)
            return lease
        raise LockHeldError(f"could not acquire the lease for stack {self.stack!r}")

    def renew(self, lease: Lease) -> None:
        current = self.current_lease()
        if current is None or current.lease_id != lease.lease_id:
            raise LockHeldError(
                f"lease {lease.lease_id} for stack {self.stack!r} "
                "is no longer held",
                lease=current,
            )
        lease.expires_at = time.time() + self.lease_ttl
        self._replace(self.lock_path, asdict(lease))
        logger.debug("renewed lease %s", lease.lease_id)

    def release(self, lease: Lease) -> None:
        if self._remove_lock(lease.lease_id):
            logger.debug("released lease %s", lease.lease_id)

    def force_unlock(self, lease_id: str) -> None:
        try:
            current = self.current_lease()
        except LockHeldError:
            logger.warning("removing unreadable lock file %s", self.lock_path)
            self._unlink_lock()
            return
        if current is None:
            raise StackplanError(f"stack {self.stack!r} is not locked")
        if current.lease_id != lease_id:
            raise StackplanError(
                f"lease id mismatch: stack {self.stack!r} is held by {current.lease_id}"
            )
        self._remove_lock(lease_id)

    def _remove_lock(self, lease_id: str, only_expired: bool = False) -> bool:
        """Remove the lock file only while it still carries ``lease_id``."""
        current = self.current_lease()
        if current is None or current.lease_id != lease_id:
            return False
        if only_expired and not current.expired:
            # renewed since we looked at it
            return False
        self._unlink_lock()
        logger.debug("removed lease %s", lease_id)
        return True

    def _unlink_lock(self) -> None:
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
