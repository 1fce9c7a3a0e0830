"""Diff and plan engine.

Compares desired configuration (the resource graph) against the state store
and produces an ordered list of actions:

- no record, desired exists         -> create
- record, no desired entry          -> delete
- kind changed or record tainted    -> replace
- attributes differ, all mutable    -> update
- an immutable attribute differs    -> replace
- attributes equal                  -> no-op

Replacement creates the new object before destroying the old one, unless a
unique (naming) attribute keeps its value or the old object depends on a
resource removed from the configuration; then the old object is destroyed
first.

Entries with references to values that are only known after apply are
deferred; the executor re-resolves and reclassifies them once their
dependencies complete.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from engine.graph import ResourceGraph
from engine.resolver import OutputResolver, Unresolved, is_resolved
from engine.state import StateRecord, StateStore
from manifest import Reference
from schema import ResourceSchema

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
REPLACE = 'replace'
NOOP = 'no-op'

CREATE_BEFORE_DESTROY = 'create_before_destroy'
DESTROY_BEFORE_CREATE = 'destroy_before_create'

ACTION_SYMBOLS = {
    CREATE: '+',
    UPDATE: '~',
    DELETE: '-',
    REPLACE: '-/+',
    NOOP: ' ',
}


@dataclass
class PlanEntry:
    """One planned action.

    Attributes:
        name: Resource name
        kind: Resource kind
        action: create, update, delete, replace or no-op
        rank: Ordering rank (position in the plan)
        source: Desired attributes as configured (reference expressions intact)
        desired: Desired attributes resolved as far as currently possible
        pending: References still unresolved in desired
        prior: State record the action starts from (None for create)
        changed: Attribute names that differ from the prior record
        dependencies: Names of entries that must complete first
        replace_mode: create_before_destroy or destroy_before_create
        cleanup: Deposed identifiers to delete after the action
        destroy_first: Replace by destroying first (prior object depends on a
            resource being deleted)
        reason: Why this action was chosen
    """
    name: str
    kind: str
    action: str
    rank: int
    source: dict = field(default_factory=dict)
    desired: dict = field(default_factory=dict)
    pending: list[Reference] = field(default_factory=list)
    prior: Optional[StateRecord] = None
    changed: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    replace_mode: Optional[str] = None
    cleanup: list[str] = field(default_factory=list)
    destroy_first: bool = False
    reason: str = ''
    schema: Optional[ResourceSchema] = field(default=None, repr=False)

    @property
    def deferred(self) -> bool:
        return bool(self.pending)

    @property
    def is_change(self) -> bool:
        return self.action != NOOP or bool(self.cleanup)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'action': self.action,
            'rank': self.rank,
        }
        if self.changed:
            d['changed'] = list(self.changed)
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.replace_mode:
            d['replace_mode'] = self.replace_mode
        if self.pending:
            d['deferred'] = [str(r) for r in self.pending]
        if self.cleanup:
            d['cleanup'] = list(self.cleanup)
        if self.reason:
            d['reason'] = self.reason
        return d


@dataclass
class Plan:
    """Ordered set of actions reconciling desired and actual state."""
    stack: str
    entries: list[PlanEntry] = field(default_factory=list)
    destroy: bool = False

    @property
    def order(self) -> list[str]:
        return [e.name for e in sorted(self.entries, key=lambda e: e.rank)]

    def get(self, name: str) -> PlanEntry:
        """Get an entry by resource name.

        Raises:
            KeyError: If the resource is not in the plan
        """
        for entry in self.entries:
            if entry.name == name:
                return entry
        raise KeyError(name)

    @property
    def changes(self) -> list[PlanEntry]:
        return [e for e in self.entries if e.is_change]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def summary(self) -> dict[str, int]:
        counts = {CREATE: 0, UPDATE: 0, REPLACE: 0, DELETE: 0, NOOP: 0}
        for entry in self.entries:
            counts[entry.action] += 1
        return counts

    def render(self) -> str:
        """Human-readable diff."""
        if self.is_empty:
            return f"No changes. Stack '{self.stack}' matches the configuration."

        lines = []
        for entry in sorted(self.entries, key=lambda e: e.rank):
            if not entry.is_change:
                continue
            symbol = ACTION_SYMBOLS[entry.action]
            header = f"{symbol:>3} {entry.kind}.{entry.name} ({entry.action})"
            if entry.reason:
                header += f"  # {entry.reason}"
            lines.append(header)
            for attr in entry.changed:
                old = entry.prior.attributes.get(attr) if entry.prior else None
                new = entry.desired.get(attr)
                lines.append(f"      {attr}: {_fmt(old)} -> {_fmt(new)}")
            for ident in entry.cleanup:
                lines.append(f"      deposed object {ident} will be deleted")

        s = self.summary()
        lines.append('')
        lines.append(
            f"Plan: {s[CREATE]} to create, {s[UPDATE]} to update, "
            f"{s[REPLACE]} to replace, {s[DELETE]} to delete."
        )
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'stack': self.stack,
            'destroy': self.destroy,
            'summary': self.summary(),
            'order': self.order,
            'entries': [e.to_dict() for e in sorted(self.entries, key=lambda e: e.rank)],
        }


def _fmt(value: Any) -> str:
    if value is None:
        return '(none)'
    if isinstance(value, Unresolved):
        return str(value)
    if not is_resolved(value):
        return '(known after apply)'
    return repr(value)


def diff_attributes(desired: dict, prior: dict) -> list[str]:
    """Names of attributes whose desired value differs from the prior value.

    Unresolved values count as changed.
    """
    changed = []
    for name in sorted(set(desired) | set(prior)):
        value = desired.get(name)
        if not is_resolved(value) or value != prior.get(name):
            changed.append(name)
    return changed


def classify(entry: PlanEntry) -> None:
    """Choose the action for a non-delete entry from its prior record."""
    record = entry.prior
    schema = entry.schema

    if record is None:
        entry.action = CREATE
        entry.changed = sorted(entry.desired)
        entry.reason = ''
        entry.replace_mode = None
        return

    if record.kind != entry.kind:
        entry.action = REPLACE
        entry.changed = diff_attributes(entry.desired, record.attributes)
        entry.replace_mode = DESTROY_BEFORE_CREATE
        entry.reason = f"kind changed from {record.kind}"
        return

    entry.changed = diff_attributes(entry.desired, record.attributes)

    if record.tainted:
        entry.action = REPLACE
        entry.reason = 'tainted'
    elif not entry.changed:
        entry.action = NOOP
        entry.reason = ''
        entry.replace_mode = None
        return
    elif schema is not None and schema.requires_replacement(entry.changed):
        immutable = [a for a in entry.changed if schema.requires_replacement([a])]
        entry.action = REPLACE
        entry.reason = f"{', '.join(immutable)} cannot be updated in place"
    else:
        entry.action = UPDATE
        entry.reason = ''
        entry.replace_mode = None
        return

    if entry.destroy_first or (schema is not None and schema.collides(record.attributes, entry.desired)):
        entry.replace_mode = DESTROY_BEFORE_CREATE
    else:
        entry.replace_mode = CREATE_BEFORE_DESTROY


def known_values(entry: PlanEntry) -> dict:
    """Values dependents may rely on before this entry executes.

    Unchanged resources expose everything in state; updated resources keep
    their identifier; created or replaced resources expose only resolved
    desired inputs.
    """
    resolved_inputs = {k: v for k, v in entry.desired.items() if is_resolved(v)}
    if entry.action == NOOP and entry.prior is not None:
        return entry.prior.values
    if entry.action == UPDATE and entry.prior is not None:
        return {**resolved_inputs, 'id': entry.prior.identifier}
    return resolved_inputs


class Planner:
    """Builds plans from a resource graph and a state store."""

    def __init__(self, graph: Optional[ResourceGraph], state: StateStore,
                 resolver: Optional[OutputResolver] = None):
        self.graph = graph
        self.state = state
        self.resolver = resolver or OutputResolver()

    def plan(self) -> Plan:
        """Plan an apply: reconcile every configured resource, delete orphans."""
        if self.graph is None:
            raise ValueError("Planning an apply requires a resource graph")

        stack = self.graph.manifest.name
        records = self.state.records()
        entries: list[PlanEntry] = []
        removed = {name for name in records if name not in self.graph}

        for rank, node in enumerate(self.graph.apply_order()):
            desired, pending = self.resolver.resolve(node.desired)
            entry = PlanEntry(
                name=node.name,
                kind=node.kind,
                action='',
                rank=rank,
                source=node.desired,
                desired=desired,
                pending=pending,
                prior=records.get(node.name),
                dependencies=self.graph.dependencies_of(node.name),
                schema=node.schema,
            )
            # Old object depends on a removed resource: destroy it before that delete
            if entry.prior is not None:
                entry.destroy_first = any(d in removed for d in entry.prior.dependencies)
            classify(entry)
            if entry.prior is not None and entry.prior.deposed:
                entry.cleanup = list(entry.prior.deposed)
            self.resolver.record(node.name, known_values(entry))
            node.status = 'planned'
            entries.append(entry)

        # Orphans go after their recorded dependents, configured ones included
        orphans = [n for n in reversed(self.state.apply_order) if n not in self.graph]
        for i, name in enumerate(orphans):
            record = records[name]
            waits_on = [e.name for e in entries[:len(self.graph)]
                        if e.prior is not None and name in e.prior.dependencies]
            waits_on += [o for o in orphans if name in records[o].dependencies]
            entries.append(PlanEntry(
                name=name,
                kind=record.kind,
                action=DELETE,
                rank=len(self.graph) + i,
                prior=record,
                dependencies=waits_on,
                cleanup=list(record.deposed),
                reason='removed from configuration',
            ))

        plan = Plan(stack=stack, entries=entries)
        logger.info(f"Plan for '{stack}': {_summary_line(plan)}")
        return plan

    def plan_destroy(self, stack: str = '') -> Plan:
        """Plan a destroy: delete every record in reverse of the last apply order."""
        records = self.state.records()
        order = list(reversed(self.state.apply_order))
        entries = []
        for rank, name in enumerate(order):
            record = records[name]
            entries.append(PlanEntry(
                name=name,
                kind=record.kind,
                action=DELETE,
                rank=rank,
                prior=record,
                dependencies=[o for o in order if name in records[o].dependencies],
                cleanup=list(record.deposed),
                reason='destroy',
            ))

        plan = Plan(stack=stack or self.state.stack, entries=entries, destroy=True)
        logger.info(f"Destroy plan for '{plan.stack}': {len(entries)} to delete")
        return plan

    def reclassify(self, entry: PlanEntry) -> None:
        """Re-resolve a deferred entry and choose its action again."""
        if entry.action == DELETE:
            return
        entry.desired, entry.pending = self.resolver.resolve(entry.source)
        previous = entry.action
        classify(entry)
        if entry.action != previous:
            logger.info(f"'{entry.name}' reclassified {previous} -> {entry.action}")


def _summary_line(plan: Plan) -> str:
    s = plan.summary()
    return ', '.join(f"{count} {action}" for action, count in s.items() if count)
