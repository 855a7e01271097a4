"""Observed state persistence with an exclusive lock.

The state record is a single versioned document:

    {
      "format_version": 1,
      "version": 12,
      "lock": {"lock_id": ..., "holder": ..., "acquired_at": ...} | null,
      "resources": {address: ResourceState, ...}
    }

Every write bumps version. A LockHandle remembers the version it last
wrote; commit() is a compare-and-swap against it and raises
ConflictError when the record moved underneath the holder.
"""

import copy
import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from converger.errors import ConflictError, ConvergerError, LockContentionError
from converger.providers import ID_ATTRIBUTE

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass
class ResourceState:
    """Last confirmed state of one provisioned instance.

    Attributes:
        address: Instance address (kind.name)
        kind: Resource kind
        resource_id: Provider-assigned identifier
        attributes: Attribute values confirmed live (declared and computed)
        managed: Names of attributes the declaration set
        dependencies: Producer addresses at the time it was applied
        declaration_hash: Content hash of the producing declaration
        created_at: Timestamp of confirmed creation
        updated_at: Timestamp of last confirmed change
    """
    address: str
    kind: str
    resource_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    managed: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    declaration_hash: str = ''
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def value(self, attribute: str) -> Any:
        """Get a confirmed attribute value.

        Raises:
            KeyError: If the attribute was not confirmed
        """
        if attribute in self.attributes:
            return self.attributes[attribute]
        if attribute == ID_ATTRIBUTE:
            return self.resource_id
        raise KeyError(attribute)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'kind': self.kind,
            'resource_id': self.resource_id,
            'attributes': dict(self.attributes),
        }
        if self.managed:
            d['managed'] = list(self.managed)
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.declaration_hash:
            d['declaration_hash'] = self.declaration_hash
        if self.created_at is not None:
            d['created_at'] = self.created_at
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, address: str, data: dict) -> 'ResourceState':
        return cls(
            address=address,
            kind=data['kind'],
            resource_id=data['resource_id'],
            attributes=dict(data.get('attributes') or {}),
            managed=list(data.get('managed') or []),
            dependencies=list(data.get('dependencies') or []),
            declaration_hash=data.get('declaration_hash', ''),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )


class ObservedState:
    """What was actually provisioned, keyed by instance address."""

    def __init__(self, resources: Optional[dict[str, ResourceState]] = None):
        self._resources: dict[str, ResourceState] = dict(resources or {})

    def __contains__(self, address: str) -> bool:
        return address in self._resources

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._resources))

    def __len__(self) -> int:
        return len(self._resources)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ObservedState):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    @property
    def addresses(self) -> list[str]:
        return list(self._resources)

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    def get(self, address: str) -> Optional[ResourceState]:
        return self._resources.get(address)

    def put(self, state: ResourceState) -> None:
        self._resources[state.address] = state

    def remove(self, address: str) -> Optional[ResourceState]:
        return self._resources.pop(address, None)

    def copy(self) -> 'ObservedState':
        return ObservedState({addr: copy.deepcopy(rs) for addr, rs in self._resources.items()})

    def to_dict(self) -> dict:
        return {addr: rs.to_dict() for addr, rs in self._resources.items()}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ObservedState':
        return cls({addr: ResourceState.from_dict(addr, rs) for addr, rs in (data or {}).items()})


@dataclass(frozen=True)
class LockRecord:
    """The single exclusive lock token stored in the state record."""
    lock_id: str
    holder: str
    acquired_at: float

    def to_dict(self) -> dict:
        return {'lock_id': self.lock_id, 'holder': self.holder, 'acquired_at': self.acquired_at}

    @classmethod
    def from_dict(cls, data: dict) -> 'LockRecord':
        return cls(lock_id=data['lock_id'], holder=data['holder'], acquired_at=data['acquired_at'])


@dataclass
class StateRecord:
    """Full persisted document: version, lock and observed state."""
    version: int = 0
    lock: Optional[LockRecord] = None
    observed: ObservedState = field(default_factory=ObservedState)

    def to_dict(self) -> dict:
        return {
            'format_version': STATE_FORMAT_VERSION,
            'version': self.version,
            'lock': self.lock.to_dict() if self.lock else None,
            'resources': self.observed.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StateRecord':
        if not data:
            return cls()
        fmt = data.get('format_version', STATE_FORMAT_VERSION)
        if fmt != STATE_FORMAT_VERSION:
            raise ConvergerError(
                f"Unsupported state format version {fmt} (expected {STATE_FORMAT_VERSION})"
            )
        lock = data.get('lock')
        return cls(
            version=int(data.get('version', 0)),
            lock=LockRecord.from_dict(lock) if lock else None,
            observed=ObservedState.from_dict(data.get('resources')),
        )


@dataclass
class LockHandle:
    """Proof of lock ownership held by the current run.

    Attributes:
        lock_id: Id of the LockRecord this handle owns
        holder: Operator identity
        acquired_at: Acquisition timestamp
        version: Record version last written through this handle
        released: True once release_lock has run
    """
    lock_id: str
    holder: str
    acquired_at: float
    version: int
    released: bool = False


class MemoryStateBackend:
    """State backend holding the record in process memory."""

    def __init__(self):
        self._data: Optional[dict] = None
        self._mutex = threading.Lock()

    def describe(self) -> str:
        return 'memory'

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._mutex:
            yield

    def read(self) -> Optional[dict]:
        return copy.deepcopy(self._data)

    def write(self, data: dict) -> None:
        self._data = copy.deepcopy(data)


class FileStateBackend:
    """State backend storing the record as a JSON file.

    Writes go to a temp file and are renamed into place, so readers never
    see a partial record. Each read-modify-write holds a guard file
    created with O_EXCL; a guard older than stale_after seconds is left
    over from a crashed writer and is removed.
    """

    def __init__(self, path: Path, guard_timeout: float = 10.0, stale_after: float = 60.0,
                 poll_interval: float = 0.05):
        self.path = Path(path)
        self.guard_path = self.path.with_name(self.path.name + '.guard')
        self.guard_timeout = guard_timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._mutex = threading.Lock()

    def describe(self) -> str:
        return str(self.path)

    def _try_guard(self) -> bool:
        try:
            fd = os.open(self.guard_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w') as f:
            f.write(str(os.getpid()))
        return True

    def _guard_is_stale(self) -> bool:
        try:
            age = time.time() - self.guard_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > self.stale_after

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._mutex:
            deadline = time.monotonic() + self.guard_timeout
            while not self._try_guard():
                if self._guard_is_stale():
                    logger.warning(f"Removing stale state guard {self.guard_path}")
                    try:
                        self.guard_path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() >= deadline:
                    raise ConvergerError(f"Timed out waiting for state guard {self.guard_path}")
                time.sleep(self.poll_interval)
            try:
                yield
            finally:
                try:
                    self.guard_path.unlink()
                except FileNotFoundError:
                    pass

    def read(self) -> Optional[dict]:
        try:
            with open(self.path, encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise ConvergerError(f"Corrupt state file {self.path}: {e}")

    def write(self, data: dict) -> None:
        tmp_path = self.path.with_name(f'.{self.path.name}.{uuid.uuid4().hex}.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise


class StateStore:
    """Observed state plus exclusive lock, with versioned CAS commits."""

    def __init__(self, backend, poll_interval: float = 0.5):
        """Initialize store.

        Args:
            backend: MemoryStateBackend or FileStateBackend
            poll_interval: Seconds between lock acquisition attempts
        """
        self.backend = backend
        self.poll_interval = poll_interval

    @classmethod
    def for_path(cls, path: Path, poll_interval: float = 0.5) -> 'StateStore':
        return cls(FileStateBackend(path), poll_interval=poll_interval)

    def _load(self) -> StateRecord:
        return StateRecord.from_dict(self.backend.read())

    def _save(self, record: StateRecord) -> None:
        self.backend.write(record.to_dict())

    def read_record(self) -> StateRecord:
        """Read the full record without locking (for display)."""
        with self.backend.exclusive():
            return self._load()

    def read_observed_state(self) -> ObservedState:
        return self.read_record().observed

    def current_lock(self) -> Optional[LockRecord]:
        return self.read_record().lock

    def acquire_lock(self, operator_id: str, timeout: float) -> LockHandle:
        """Acquire the exclusive state lock.

        Polls until the lock is free or timeout elapses.

        Raises:
            LockContentionError: Lock still held by another run at timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            with self.backend.exclusive():
                record = self._load()
                if record.lock is None:
                    lock = LockRecord(
                        lock_id=uuid.uuid4().hex,
                        holder=operator_id,
                        acquired_at=time.time(),
                    )
                    record.lock = lock
                    record.version += 1
                    self._save(record)
                    logger.info(f"[lock] Acquired state lock {lock.lock_id} for {operator_id}")
                    return LockHandle(
                        lock_id=lock.lock_id,
                        holder=operator_id,
                        acquired_at=lock.acquired_at,
                        version=record.version,
                    )
                current = record.lock

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockContentionError(current.holder, current.lock_id, current.acquired_at)
            logger.debug(f"[lock] State locked by {current.holder}, retrying...")
            time.sleep(min(self.poll_interval, remaining))

    def _check_handle(self, record: StateRecord, handle: LockHandle) -> None:
        if handle.released:
            raise ConflictError(f"Lock {handle.lock_id} was already released")
        if record.lock is None or record.lock.lock_id != handle.lock_id:
            holder = record.lock.holder if record.lock else 'nobody'
            logger.error(f"[lock] Lock {handle.lock_id} lost; state now locked by {holder}")
            raise ConflictError(
                f"Lock {handle.lock_id} is no longer held (current holder: {holder})"
            )
        if record.version != handle.version:
            logger.error(f"[lock] State version moved from {handle.version} to "
                         f"{record.version} while lock {handle.lock_id} was held")
            raise ConflictError(
                f"State version {record.version} does not match expected {handle.version}"
            )

    def read_locked(self, handle: LockHandle) -> ObservedState:
        """Read observed state, verifying the handle still owns the record.

        Raises:
            ConflictError: If the lock or version no longer match
        """
        with self.backend.exclusive():
            record = self._load()
            self._check_handle(record, handle)
            return record.observed

    def commit(self, handle: LockHandle, observed: ObservedState) -> int:
        """Atomically replace the observed state.

        Returns:
            New record version

        Raises:
            ConflictError: If the lock or version no longer match
        """
        with self.backend.exclusive():
            record = self._load()
            self._check_handle(record, handle)
            record.observed = observed.copy()
            record.version += 1
            self._save(record)
            handle.version = record.version
        logger.debug(f"Committed state version {handle.version} ({len(observed)} resources)")
        return handle.version

    def release_lock(self, handle: LockHandle) -> None:
        """Release the lock. Safe to call more than once."""
        if handle.released:
            return
        with self.backend.exclusive():
            record = self._load()
            if record.lock is None or record.lock.lock_id != handle.lock_id:
                logger.warning(f"[lock] Lock {handle.lock_id} was not held at release")
            else:
                record.lock = None
                record.version += 1
                self._save(record)
                logger.info(f"[lock] Released state lock {handle.lock_id}")
        handle.released = True

    def force_unlock(self, lock_id: str) -> LockRecord:
        """Remove a lock left behind by a crashed run.

        Raises:
            ConvergerError: If no lock with that id is held
        """
        with self.backend.exclusive():
            record = self._load()
            if record.lock is None or record.lock.lock_id != lock_id:
                current = record.lock.lock_id if record.lock else 'none'
                raise ConvergerError(f"Lock {lock_id} is not held (current lock: {current})")
            removed = record.lock
            record.lock = None
            record.version += 1
            self._save(record)
        logger.warning(f"[lock] Force-unlocked {lock_id} held by {removed.holder}")
        return removed

    @contextmanager
    def locked(self, operator_id: str, timeout: float) -> Iterator['StateSession']:
        """Hold the lock for the duration of the block.

        The lock is released on every exit path; whatever was committed
        through the session stays committed.
        """
        handle = self.acquire_lock(operator_id, timeout)
        try:
            yield StateSession(self, handle)
        finally:
            self.release_lock(handle)


class StateSession:
    """Observed state held under a lock, with a serialized commit path.

    Executor tasks record confirmed results here; each call commits the
    whole observed state through the store while holding the session
    mutex, so there is one writer at a time.
    """

    def __init__(self, store: StateStore, handle: LockHandle):
        self.store = store
        self.handle = handle
        self._observed = store.read_locked(handle)
        self._mutex = threading.Lock()

    @property
    def observed(self) -> ObservedState:
        """Snapshot of the observed state as last committed."""
        with self._mutex:
            return self._observed.copy()

    def get(self, address: str) -> Optional[ResourceState]:
        with self._mutex:
            rs = self._observed.get(address)
            return copy.deepcopy(rs) if rs else None

    def record(self, state: ResourceState) -> None:
        """Store a confirmed instance state and commit.

        A failed commit leaves the session as it was.
        """
        with self._mutex:
            prior = self._observed.get(state.address)
            self._observed.put(state)
            try:
                self.store.commit(self.handle, self._observed)
            except Exception:
                if prior is None:
                    self._observed.remove(state.address)
                else:
                    self._observed.put(prior)
                raise

    def forget(self, address: str) -> None:
        """Drop an instance confirmed gone and commit."""
        with self._mutex:
            prior = self._observed.remove(address)
            if prior is None:
                return
            try:
                self.store.commit(self.handle, self._observed)
            except Exception:
                self._observed.put(prior)
                raise
