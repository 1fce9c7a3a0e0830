"""Tests for engine.resolver module."""

import sys
from pathlib import Path
from types import SimpleNamespace

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.resolver import (
    OutputResolver,
    Unresolved,
    is_resolved,
    pending_references,
    resolve_attributes,
    resolve_value,
)
from manifest import Reference


def _lookup(known):
    def lookup(ref):
        return known[ref.resource][ref.attribute]
    return lookup


class TestResolveValue:
    """Tests for resolve_value."""

    def test_literal_unchanged(self):
        assert resolve_value('10.0.0.0/16', _lookup({})) == '10.0.0.0/16'
        assert resolve_value(443, _lookup({})) == 443

    def test_whole_reference_keeps_type(self):
        known = {'cfg': {'ports': [80, 443]}}
        assert resolve_value('${cfg.ports}', _lookup(known)) == [80, 443]

    def test_embedded_reference_interpolated(self):
        known = {'lb': {'dns_name': 'web.elb.local'}}
        assert resolve_value('https://${lb.dns_name}/health', _lookup(known)) == 'https://web.elb.local/health'

    def test_unknown_becomes_unresolved(self):
        value = resolve_value('${main.id}', _lookup({}))
        assert value == Unresolved(Reference('main', 'id'))
        assert 'known after apply' in str(value)

    def test_nested(self):
        known = {'main': {'id': 'vpc-1'}}
        value = resolve_value({'ids': ['${main.id}', '${sg.id}'], 'n': 1}, _lookup(known))
        assert value['ids'][0] == 'vpc-1'
        assert isinstance(value['ids'][1], Unresolved)
        assert value['n'] == 1

    def test_resolve_attributes_reports_pending(self):
        known = {'main': {'id': 'vpc-1'}}
        resolved, pending = resolve_attributes(
            {'vpc_id': '${main.id}', 'gateway_id': '${igw.id}'}, _lookup(known))
        assert resolved['vpc_id'] == 'vpc-1'
        assert pending == [Reference('igw', 'id')]


class TestPendingReferences:
    """Tests for pending_references."""

    def test_collects_unique(self):
        ref = Reference('main', 'id')
        value = {'a': Unresolved(ref), 'b': [Unresolved(ref)]}
        assert pending_references(value) == [ref]
        assert not is_resolved(value)

    def test_resolved(self):
        assert is_resolved({'a': 'vpc-1'})


class TestOutputResolver:
    """Tests for OutputResolver."""

    def test_resolve(self):
        resolver = OutputResolver()
        resolver.record('main', {'id': 'vpc-1'})
        resolved, pending = resolver.resolve({'vpc_id': '${main.id}', 'sg': '${sg.id}'})
        assert resolved['vpc_id'] == 'vpc-1'
        assert pending == [Reference('sg', 'id')]

    def test_propagate(self):
        resolver = OutputResolver()
        source = {'vpc_id': '${main.id}'}
        waiting = SimpleNamespace(name='sub', source=source, desired=None, pending=None)
        waiting.desired, waiting.pending = resolver.resolve(source)
        unrelated = SimpleNamespace(name='other', source={}, desired={}, pending=[])

        resolver.record('main', {'id': 'vpc-9'})
        ready = resolver.propagate('main', [waiting, unrelated])

        assert ready == [waiting]
        assert waiting.desired == {'vpc_id': 'vpc-9'}
        assert waiting.pending == []

    def test_propagate_still_waiting(self):
        resolver = OutputResolver()
        source = {'vpc_id': '${main.id}', 'sg': '${sg.id}'}
        entry = SimpleNamespace(name='lb', source=source, desired=None, pending=None)
        entry.desired, entry.pending = resolver.resolve(source)

        resolver.record('main', {'id': 'vpc-9'})
        assert resolver.propagate('main', [entry]) == []
        assert entry.desired['vpc_id'] == 'vpc-9'
        assert entry.pending == [Reference('sg', 'id')]
