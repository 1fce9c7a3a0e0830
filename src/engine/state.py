"""State management for the provisioning engine.

Two kinds of state live here:

- StateStore: the persisted, versioned record of every managed resource
  (last-applied attributes, computed outputs, provider identifier). It is
  written only by the executor after a successful action, one write at a
  time, and replaced atomically on disk.
- RunState: per-run status of each node (pending, planned, executing,
  applied, failed, skipped, destroyed), used for the end-of-run summary.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Current state document version
STATE_VERSION = 1

# Node statuses
TERMINAL_STATUSES = ('applied', 'failed', 'skipped', 'destroyed')


class StateCorruptionError(Exception):
    """State document cannot be trusted; manual reconciliation required."""


@dataclass
class StateRecord:
    """Last-known real-world state of one resource.

    Attributes:
        name: Logical resource name
        kind: Resource kind
        identifier: Provider-assigned identifier
        attributes: Last-applied desired attributes (references resolved)
        outputs: Computed attributes returned by the provider
        dependencies: Names of resources this one depended on when applied
        tainted: Last operation failed; the resource will be replaced
        deposed: Identifiers of replaced objects whose delete failed
        updated_at: Timestamp of the last write
    """
    name: str
    kind: str
    identifier: str
    attributes: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    tainted: bool = False
    deposed: list[str] = field(default_factory=list)
    updated_at: Optional[float] = None

    @property
    def values(self) -> dict:
        """All referenceable values: attributes, outputs and id."""
        return {**self.attributes, **self.outputs, 'id': self.identifier}

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'identifier': self.identifier,
            'attributes': self.attributes,
            'outputs': self.outputs,
            'dependencies': self.dependencies,
        }
        if self.tainted:
            d['tainted'] = True
        if self.deposed:
            d['deposed'] = self.deposed
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        return cls(
            name=data['name'],
            kind=data['kind'],
            identifier=str(data['identifier']),
            attributes=dict(data.get('attributes') or {}),
            outputs=dict(data.get('outputs') or {}),
            dependencies=list(data.get('dependencies') or []),
            tainted=bool(data.get('tainted', False)),
            deposed=list(data.get('deposed') or []),
            updated_at=data.get('updated_at'),
        )


class StateStore:
    """Persisted resource state for one stack.

    All writes are serialized through one lock and persisted atomically
    (temp file + rename). A failed write halts the store: the in-memory copy
    is rolled back and every later write raises StateCorruptionError.

    State is persisted to .states/{stack}/state.json by default.
    """

    def __init__(self, path: Optional[Path], stack: str = ''):
        """Initialize an empty store.

        Args:
            path: State document path (None keeps the store in memory only)
            stack: Stack name recorded in the document
        """
        self.path = Path(path) if path is not None else None
        self.stack = stack
        self.serial = 0
        self._records: dict[str, StateRecord] = {}
        self._apply_order: list[str] = []
        self._lock = threading.RLock()
        self._halted = False

    @classmethod
    def load(cls, path: Optional[Path], stack: str = '') -> 'StateStore':
        """Load state from a JSON document; a missing file means empty state.

        Raises:
            StateCorruptionError: If the document is unreadable, from an
                unsupported version, or holds malformed records
        """
        store = cls(path, stack)
        if path is None or not Path(path).exists():
            return store

        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateCorruptionError(f"Cannot read state {path}: {e}")

        if not isinstance(data, dict):
            raise StateCorruptionError(f"State {path} must be a JSON object")

        version = data.get('version')
        if version != STATE_VERSION:
            raise StateCorruptionError(
                f"State {path} has version {version!r}; this engine reads version {STATE_VERSION}"
            )

        stored_stack = data.get('stack', '')
        if stack and stored_stack and stored_stack != stack:
            raise StateCorruptionError(
                f"State {path} belongs to stack '{stored_stack}', not '{stack}'"
            )

        store.serial = data.get('serial', 0)
        try:
            for name, record_data in (data.get('resources') or {}).items():
                record = StateRecord.from_dict(record_data)
                if record.name != name:
                    raise ValueError(f"record key '{name}' does not match name '{record.name}'")
                store._records[name] = record
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StateCorruptionError(f"Malformed resource record in {path}: {e}")

        order = [n for n in data.get('apply_order') or [] if n in store._records]
        order.extend(n for n in store._records if n not in order)
        store._apply_order = order

        logger.debug(f"Loaded state from {path} (serial {store.serial}, {len(store._records)} resources)")
        return store

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def apply_order(self) -> list[str]:
        with self._lock:
            return list(self._apply_order)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, name: str) -> Optional[StateRecord]:
        """Get a copy of a record (None if absent)."""
        with self._lock:
            record = self._records.get(name)
            return copy.deepcopy(record) if record is not None else None

    def records(self) -> dict[str, StateRecord]:
        """Copies of all records, keyed by name."""
        with self._lock:
            return copy.deepcopy(self._records)

    def put(self, record: StateRecord) -> None:
        """Insert or replace a record and persist.

        New records are appended to the apply order.
        """
        record = copy.deepcopy(record)
        record.updated_at = time.time()

        def _mutate():
            self._records[record.name] = record
            if record.name not in self._apply_order:
                self._apply_order.append(record.name)

        self._write(_mutate)

    def remove(self, name: str) -> None:
        """Delete a record (resource destroyed) and persist."""
        def _mutate():
            self._records.pop(name, None)
            if name in self._apply_order:
                self._apply_order.remove(name)

        self._write(_mutate)

    def taint(self, name: str) -> bool:
        """Mark a record tainted; returns False if there is no record."""
        return self._set_taint(name, True)

    def untaint(self, name: str) -> bool:
        return self._set_taint(name, False)

    def _set_taint(self, name: str, value: bool) -> bool:
        with self._lock:
            if name not in self._records:
                return False

            def _mutate():
                self._records[name].tainted = value

            self._write(_mutate)
            return True

    def set_apply_order(self, order: list[str]) -> None:
        """Record the completion order of the last apply.

        Names not in the given order keep their previous relative position,
        after the given ones.
        """
        def _mutate():
            new_order = [n for n in dict.fromkeys(order) if n in self._records]
            new_order.extend(n for n in self._apply_order if n not in new_order and n in self._records)
            self._apply_order = new_order

        self._write(_mutate)

    def _write(self, mutate) -> None:
        """Apply a mutation and persist it, as one serialized step.

        Raises:
            StateCorruptionError: If the store is halted or persisting fails
        """
        with self._lock:
            if self._halted:
                raise StateCorruptionError(
                    "State store halted after a failed write; reconcile state manually before retrying"
                )
            snapshot = (copy.deepcopy(self._records), list(self._apply_order), self.serial)
            mutate()
            self.serial += 1
            try:
                self._persist()
            except OSError as e:
                self._records, self._apply_order, self.serial = snapshot
                self._halted = True
                raise StateCorruptionError(f"Failed to write state {self.path}: {e}")

    def to_dict(self) -> dict:
        with self._lock:
            return {
                'version': STATE_VERSION,
                'serial': self.serial,
                'stack': self.stack,
                'apply_order': list(self._apply_order),
                'resources': {name: r.to_dict() for name, r in self._records.items()},
            }

    def _persist(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix='.state-', suffix='.tmp', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Saved state to {self.path} (serial {self.serial})")


@dataclass
class NodeState:
    """Per-node status for one run.

    Attributes:
        name: Resource name
        action: Planned action (create, update, delete, replace, no-op)
        status: pending, planned, executing, applied, failed, skipped, destroyed
        identifier: Provider identifier once known
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Error message if failed or skipped
        attempts: Provider call attempts
    """
    name: str
    action: str = ''
    status: str = 'pending'
    identifier: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    attempts: int = 0

    def plan(self, action: str) -> None:
        self.action = action
        self.status = 'planned'

    def start(self) -> None:
        self.status = 'executing'
        self.started_at = time.time()

    def complete(self, identifier: Optional[str] = None) -> None:
        self.status = 'applied'
        self.completed_at = time.time()
        if identifier is not None:
            self.identifier = identifier

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = 'skipped'
        self.completed_at = time.time()
        self.error = reason

    def mark_destroyed(self) -> None:
        self.status = 'destroyed'
        self.completed_at = time.time()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'action': self.action,
            'status': self.status,
        }
        if self.identifier is not None:
            d['identifier'] = self.identifier
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.attempts:
            d['attempts'] = self.attempts
        if self.error is not None:
            d['error'] = self.error
        return d


class RunState:
    """Status of every node in one plan/apply/destroy run."""

    def __init__(self, stack: str, verb: str):
        self.stack = stack
        self.verb = verb
        self._nodes: dict[str, NodeState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.fatal_error: Optional[str] = None
        self.cancelled = False

    def add_node(self, name: str) -> NodeState:
        """Register a node for tracking."""
        state = NodeState(name=name)
        self._nodes[name] = state
        return state

    def get_node(self, name: str) -> NodeState:
        """Get node state by name.

        Raises:
            KeyError: If node not registered
        """
        return self._nodes[name]

    @property
    def nodes(self) -> dict[str, NodeState]:
        return dict(self._nodes)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def with_status(self, status: str) -> list[str]:
        return [name for name, ns in self._nodes.items() if ns.status == status]

    @property
    def failures(self) -> dict[str, str]:
        """Failed node names mapped to their error messages."""
        return {name: ns.error or '' for name, ns in self._nodes.items() if ns.status == 'failed'}

    @property
    def success(self) -> bool:
        if self.fatal_error:
            return False
        return all(ns.status in ('applied', 'destroyed') for ns in self._nodes.values())

    @property
    def exit_code(self) -> int:
        """Worst failure encountered: 3 state corruption, 1 node failure, 0 ok."""
        if self.fatal_error:
            return 3
        return 0 if self.success else 1

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for ns in self._nodes.values():
            counts[ns.status] = counts.get(ns.status, 0) + 1
        return counts

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'stack': self.stack,
            'verb': self.verb,
            'success': self.success,
            'duration_seconds': round(self.duration, 2),
            'summary': self.summary(),
            'nodes': [ns.to_dict() for ns in self._nodes.values()],
        }
        if self.cancelled:
            d['cancelled'] = True
        if self.fatal_error:
            d['fatal_error'] = self.fatal_error
        return d
