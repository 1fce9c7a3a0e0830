"""Output resolution for cross-resource references.

Attribute values are either literals or reference expressions. A reference
whose target value is not known yet (the target has not been applied) is
replaced by an Unresolved placeholder; one propagation pass after each
completed action rewrites the placeholders that became resolvable.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from manifest import REFERENCE_PATTERN, Reference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unresolved:
    """Placeholder for a value only known after a dependency is applied."""
    reference: Reference

    def __str__(self) -> str:
        return f'(known after apply: {self.reference})'


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute references inside a value.

    A string that is exactly one reference resolves to the raw target value
    (lists and maps included); references embedded in longer strings are
    interpolated. Unknown targets (lookup raises KeyError) become Unresolved.
    """
    if isinstance(value, str):
        matches = list(REFERENCE_PATTERN.finditer(value))
        if not matches:
            return value
        if len(matches) == 1 and matches[0].span() == (0, len(value)):
            ref = Reference(matches[0].group(1), matches[0].group(2))
            try:
                return lookup(ref)
            except KeyError:
                return Unresolved(ref)

        parts: list[str] = []
        pos = 0
        for match in matches:
            ref = Reference(match.group(1), match.group(2))
            try:
                resolved = lookup(ref)
            except KeyError:
                return Unresolved(ref)
            parts.append(value[pos:match.start()])
            parts.append(str(resolved))
            pos = match.end()
        parts.append(value[pos:])
        return ''.join(parts)

    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def resolve_attributes(attributes: dict, lookup: Callable[[Reference], Any]) -> tuple[dict, list[Reference]]:
    """Resolve an attribute mapping; return (resolved, pending references)."""
    resolved = resolve_value(attributes, lookup)
    return resolved, pending_references(resolved)


def pending_references(value: Any) -> list[Reference]:
    """References still unresolved inside a value."""
    found: list[Reference] = []

    def _walk(v: Any) -> None:
        if isinstance(v, Unresolved):
            if v.reference not in found:
                found.append(v.reference)
        elif isinstance(v, dict):
            for item in v.values():
                _walk(item)
        elif isinstance(v, list):
            for item in v:
                _walk(item)

    _walk(value)
    return found


def is_resolved(value: Any) -> bool:
    return not pending_references(value)


class OutputResolver:
    """Known values per resource, used to resolve references.

    Values come from the state for unchanged resources, from planned inputs
    for changing ones, and from provider results once an action completes.
    """

    def __init__(self):
        self._known: dict[str, dict] = {}
        self._lock = threading.Lock()

    def record(self, name: str, values: dict) -> None:
        """Set the known values of a resource."""
        with self._lock:
            self._known[name] = dict(values)

    def lookup(self, ref: Reference) -> Any:
        """Value of a reference.

        Raises:
            KeyError: If the value is not known yet
        """
        with self._lock:
            return self._known[ref.resource][ref.attribute]

    def resolve(self, attributes: dict) -> tuple[dict, list[Reference]]:
        """Resolve an attribute mapping; return (resolved, pending references)."""
        return resolve_attributes(attributes, self.lookup)

    def propagate(self, name: str, entries: list) -> list:
        """Rewrite deferred entries that wait on a completed resource.

        Args:
            name: Resource whose values were just recorded
            entries: Candidate downstream plan entries

        Returns:
            Entries that were deferred on name and are now fully resolved
        """
        now_resolved = []
        for entry in entries:
            if not entry.pending or name not in {r.resource for r in entry.pending}:
                continue
            entry.desired, entry.pending = self.resolve(entry.source)
            if entry.pending:
                logger.debug(f"'{entry.name}' still waiting on {', '.join(map(str, entry.pending))}")
            else:
                logger.debug(f"'{entry.name}' references resolved after '{name}' completed")
                now_resolved.append(entry)
        return now_resolved
