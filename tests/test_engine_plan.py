"""Tests for engine.plan module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ProviderContext, RetryPolicy
from engine.executor import Executor
from engine.graph import ResourceGraph
from engine.plan import (
    CREATE,
    CREATE_BEFORE_DESTROY,
    DELETE,
    DESTROY_BEFORE_CREATE,
    NOOP,
    REPLACE,
    UPDATE,
    Plan,
    PlanEntry,
    Planner,
    diff_attributes,
)
from engine.resolver import Unresolved
from engine.state import StateRecord, StateStore
from manifest import Manifest, Reference
from schema import default_registry


def _graph(resources, name='web'):
    manifest = Manifest.from_dict({'schema_version': 1, 'name': name, 'resources': resources})
    return ResourceGraph(manifest, default_registry())


def _vpc(name='main', cidr='10.0.0.0/16'):
    return {'name': name, 'kind': 'vpc', 'attributes': {'cidr_block': cidr}}


def _subnet(name='public_a', vpc='main'):
    return {'name': name, 'kind': 'subnet', 'attributes': {
        'vpc_id': f'${{{vpc}.id}}', 'cidr_block': '10.0.1.0/24',
    }}


def _listener(port=80):
    return {'name': 'https', 'kind': 'lb_listener', 'attributes': {
        'load_balancer_arn': 'arn:lb:1', 'port': port,
    }}


def _balancer(**overrides):
    attrs = {'name': 'web-lb', 'subnets': ['subnet-1']}
    attrs.update(overrides)
    return {'name': 'lb', 'kind': 'load_balancer', 'attributes': attrs}


def _seed(state, graph, name, identifier, **kwargs):
    """Record a resource as applied with its current desired attributes."""
    node = graph.get_node(name)
    state.put(StateRecord(
        name=name, kind=node.kind, identifier=identifier,
        attributes=dict(node.desired), **kwargs,
    ))


def _apply(graph, state, provider):
    planner = Planner(graph, state)
    executor = Executor(
        planner.plan(), state, provider, ProviderContext(stack='web'),
        planner=planner, retry=RetryPolicy(max_attempts=1, backoff=0),
    )
    return executor.run()


class TestDiffAttributes:
    """Tests for diff_attributes."""

    def test_equal(self):
        assert diff_attributes({'a': 1}, {'a': 1}) == []

    def test_changed_added_removed(self):
        assert diff_attributes({'a': 1, 'b': 2}, {'a': 2, 'c': 3}) == ['a', 'b', 'c']

    def test_unresolved_counts_as_changed(self):
        unresolved = Unresolved(Reference('main', 'id'))
        assert diff_attributes({'vpc_id': unresolved}, {'vpc_id': 'vpc-1'}) == ['vpc_id']


class TestPlanner:
    """Tests for Planner.plan classification."""

    def test_empty_state_creates_everything(self):
        graph = _graph([_vpc(), _subnet()])
        plan = Planner(graph, StateStore(None, 'web')).plan()
        assert [e.action for e in plan.entries] == [CREATE, CREATE]
        assert plan.order == ['main', 'public_a']
        assert plan.get('public_a').dependencies == ['main']

    def test_unknown_reference_is_deferred(self):
        graph = _graph([_vpc(), _subnet()])
        plan = Planner(graph, StateStore(None, 'web')).plan()
        entry = plan.get('public_a')
        assert entry.deferred is True
        assert entry.pending == [Reference('main', 'id')]
        assert plan.get('main').deferred is False

    def test_no_changes_after_apply(self, fake_provider):
        graph = _graph([_vpc(), _subnet()])
        state = StateStore(None, 'web')
        assert _apply(graph, state, fake_provider).success

        plan = Planner(_graph([_vpc(), _subnet()]), state).plan()
        assert [e.action for e in plan.entries] == [NOOP, NOOP]
        assert plan.is_empty
        assert 'No changes' in plan.render()

    def test_mutable_change_is_update(self):
        state = StateStore(None, 'web')
        _seed(state, _graph([_balancer()]), 'lb', 'lb-1')

        plan = Planner(_graph([_balancer(idle_timeout=120)]), state).plan()
        entry = plan.get('lb')
        assert entry.action == UPDATE
        assert entry.changed == ['idle_timeout']

    def test_immutable_change_is_replace(self):
        state = StateStore(None, 'web')
        _seed(state, _graph([_listener(80)]), 'https', 'l-1')

        entry = Planner(_graph([_listener(443)]), state).plan().get('https')
        assert entry.action == REPLACE
        assert entry.replace_mode == CREATE_BEFORE_DESTROY
        assert entry.reason == 'port cannot be updated in place'

    def test_unique_value_collision_destroys_first(self):
        state = StateStore(None, 'web')
        _seed(state, _graph([_balancer()]), 'lb', 'lb-1')

        entry = Planner(_graph([_balancer(internal=True)]), state).plan().get('lb')
        assert entry.action == REPLACE
        assert entry.replace_mode == DESTROY_BEFORE_CREATE

    def test_renamed_unique_value_creates_first(self):
        state = StateStore(None, 'web')
        _seed(state, _graph([_balancer()]), 'lb', 'lb-1')

        entry = Planner(_graph([_balancer(name='web-lb-2')]), state).plan().get('lb')
        assert entry.action == REPLACE
        assert entry.replace_mode == CREATE_BEFORE_DESTROY

    def test_tainted_is_replace(self):
        state = StateStore(None, 'web')
        graph = _graph([_vpc()])
        _seed(state, graph, 'main', 'vpc-1', tainted=True)

        entry = Planner(graph, state).plan().get('main')
        assert entry.action == REPLACE
        assert entry.reason == 'tainted'

    def test_kind_change_is_replace(self):
        state = StateStore(None, 'web')
        state.put(StateRecord(name='main', kind='internet_gateway', identifier='igw-1',
                              attributes={'vpc_id': 'vpc-0'}))

        entry = Planner(_graph([_vpc()]), state).plan().get('main')
        assert entry.action == REPLACE
        assert entry.replace_mode == DESTROY_BEFORE_CREATE
        assert entry.reason == 'kind changed from internet_gateway'

    def test_removed_resource_is_delete(self):
        state = StateStore(None, 'web')
        graph = _graph([_vpc(), _vpc('old', '10.1.0.0/16')])
        _seed(state, graph, 'main', 'vpc-1')
        _seed(state, graph, 'old', 'vpc-2')

        plan = Planner(_graph([_vpc()]), state).plan()
        entry = plan.get('old')
        assert entry.action == DELETE
        assert entry.rank == 1
        assert entry.reason == 'removed from configuration'
        assert plan.get('main').action == NOOP

    def test_orphan_deletes_wait_on_dependents(self):
        state = StateStore(None, 'web')
        state.put(StateRecord(name='main', kind='vpc', identifier='vpc-1'))
        state.put(StateRecord(name='sub', kind='subnet', identifier='subnet-1', dependencies=['main']))

        plan = Planner(_graph([]), state).plan()
        assert plan.order == ['sub', 'main']
        assert plan.get('main').dependencies == ['sub']
        assert plan.get('sub').dependencies == []

    def test_dependent_moved_off_removed_resource_destroys_first(self):
        state = StateStore(None, 'web')
        state.put(StateRecord(name='old', kind='vpc', identifier='vpc-old',
                              attributes={'cidr_block': '10.0.0.0/16'}))
        state.put(StateRecord(name='public_a', kind='subnet', identifier='subnet-old',
                              attributes={'vpc_id': 'vpc-old', 'cidr_block': '10.0.1.0/24',
                                          'map_public_ip_on_launch': False},
                              dependencies=['old']))

        plan = Planner(_graph([_vpc('new'), _subnet(vpc='new')]), state).plan()
        entry = plan.get('public_a')
        assert entry.action == REPLACE
        assert entry.destroy_first is True
        assert entry.replace_mode == DESTROY_BEFORE_CREATE
        assert plan.get('old').dependencies == ['public_a']

    def test_dependent_of_updated_resource_sees_identifier(self):
        state = StateStore(None, 'web')
        seeded = _graph([_vpc(), _subnet()])
        _seed(state, seeded, 'main', 'vpc-1')
        state.put(StateRecord(name='public_a', kind='subnet', identifier='subnet-1',
                              attributes={'vpc_id': 'vpc-1', 'cidr_block': '10.0.1.0/24',
                                          'map_public_ip_on_launch': False},
                              dependencies=['main']))

        changed = _graph([
            {**_vpc(), 'attributes': {'cidr_block': '10.0.0.0/16', 'tags': {'env': 'prod'}}},
            _subnet(),
        ])
        plan = Planner(changed, state).plan()
        assert plan.get('main').action == UPDATE
        assert plan.get('public_a').action == NOOP
        assert plan.get('public_a').deferred is False

    def test_deposed_objects_become_cleanup(self):
        state = StateStore(None, 'web')
        graph = _graph([_vpc()])
        _seed(state, graph, 'main', 'vpc-2', deposed=['vpc-1'])

        plan = Planner(graph, state).plan()
        entry = plan.get('main')
        assert entry.action == NOOP
        assert entry.cleanup == ['vpc-1']
        assert entry.is_change
        assert 'deposed object vpc-1' in plan.render()

    def test_requires_graph(self):
        with pytest.raises(ValueError):
            Planner(None, StateStore(None)).plan()


class TestPlanDestroy:
    """Tests for Planner.plan_destroy."""

    def test_reverse_of_apply_order(self):
        state = StateStore(None, 'web')
        state.put(StateRecord(name='main', kind='vpc', identifier='vpc-1'))
        state.put(StateRecord(name='sub', kind='subnet', identifier='subnet-1', dependencies=['main']))
        state.put(StateRecord(name='sg', kind='security_group', identifier='sg-1', dependencies=['main']))

        plan = Planner(None, state).plan_destroy()
        assert plan.destroy is True
        assert plan.stack == 'web'
        assert plan.order == ['sg', 'sub', 'main']
        assert all(e.action == DELETE for e in plan.entries)
        assert sorted(plan.get('main').dependencies) == ['sg', 'sub']

    def test_empty_state(self):
        plan = Planner(None, StateStore(None, 'web')).plan_destroy('web')
        assert plan.is_empty


class TestReclassify:
    """Tests for re-resolving deferred entries."""

    def test_resolves_after_dependency_recorded(self):
        graph = _graph([_vpc(), _subnet()])
        planner = Planner(graph, StateStore(None, 'web'))
        entry = planner.plan().get('public_a')

        planner.resolver.record('main', {'id': 'vpc-7'})
        planner.reclassify(entry)
        assert entry.deferred is False
        assert entry.desired['vpc_id'] == 'vpc-7'
        assert entry.action == CREATE

    def test_delete_untouched(self):
        entry = PlanEntry(name='old', kind='vpc', action=DELETE, rank=0)
        Planner(None, StateStore(None)).reclassify(entry)
        assert entry.action == DELETE


class TestPlanOutput:
    """Tests for Plan rendering and serialization."""

    def test_summary_and_render(self):
        graph = _graph([_vpc(), _subnet()])
        plan = Planner(graph, StateStore(None, 'web')).plan()

        assert plan.summary() == {CREATE: 2, UPDATE: 0, REPLACE: 0, DELETE: 0, NOOP: 0}
        text = plan.render()
        assert '+ vpc.main (create)' in text
        assert 'known after apply' in text
        assert text.endswith('Plan: 2 to create, 0 to update, 0 to replace, 0 to delete.')

    def test_to_dict(self):
        graph = _graph([_vpc(), _subnet()])
        data = Planner(graph, StateStore(None, 'web')).plan().to_dict()
        assert data['order'] == ['main', 'public_a']
        assert data['entries'][1]['deferred'] == ['${main.id}']
        assert data['destroy'] is False

    def test_get_missing(self):
        with pytest.raises(KeyError):
            Plan(stack='web').get('nope')
