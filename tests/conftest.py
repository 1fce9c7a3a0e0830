"""Shared pytest fixtures for iac-engine tests."""

import itertools
import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from provider import PermanentProviderError, TransientProviderError  # noqa: E402


class FakeProvider:
    """Provider double that records calls and raises scripted errors.

    Identifiers are '{prefix}-{n}' with one counter across kinds. Errors are
    keyed by ('create', kind), ('update', identifier) or ('delete', identifier):
    queued errors are raised once each, broken keys fail on every call.
    """

    def __init__(self, prefix: str = 'x', delay: float = 0.0):
        self.prefix = prefix
        self.delay = delay
        self.calls: list[tuple] = []
        self.objects: dict[str, dict] = {}
        self.hooks: dict = {}
        self._queued: dict[tuple, list[Exception]] = {}
        self._broken: dict[tuple, Exception] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def queue(self, key: tuple, *errors: Exception) -> None:
        self._queued.setdefault(key, []).extend(errors)

    def break_(self, key: tuple, error: Exception) -> None:
        self._broken[key] = error

    def _enter(self, key: tuple, record: tuple) -> None:
        with self._lock:
            self.calls.append(record)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                if key in self._broken:
                    raise self._broken[key]
                queued = self._queued.get(key)
                if queued:
                    raise queued.pop(0)
        finally:
            with self._lock:
                self._active -= 1

    def create(self, context, kind, attributes):
        self._enter(('create', kind), ('create', kind, dict(attributes)))
        if kind in self.hooks:
            self.hooks[kind](attributes)
        with self._lock:
            identifier = f'{self.prefix}-{next(self._counter)}'
            self.objects[identifier] = {'kind': kind, 'attributes': dict(attributes)}
        return identifier, {'arn': f'arn:fake:{identifier}'}

    def update(self, context, identifier, attributes):
        self._enter(('update', identifier), ('update', identifier, dict(attributes)))
        with self._lock:
            self.objects[identifier]['attributes'] = dict(attributes)
        return {'arn': f'arn:fake:{identifier}'}

    def delete(self, context, identifier):
        self._enter(('delete', identifier), ('delete', identifier))
        with self._lock:
            self.objects.pop(identifier, None)

    def ops(self, op: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == op]


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def slow_provider():
    """Provider whose calls overlap long enough to observe concurrency."""
    return FakeProvider(delay=0.05)


@pytest.fixture
def transient():
    return TransientProviderError('503 Service Unavailable')


@pytest.fixture
def permanent():
    return PermanentProviderError('400 InvalidParameterValue')


WEB_STACK = """
schema_version: 1
name: web
resources:
  - name: main
    kind: vpc
    attributes:
      cidr_block: 10.0.0.0/16
  - name: public_a
    kind: subnet
    attributes:
      vpc_id: ${main.id}
      cidr_block: 10.0.1.0/24
  - name: web_sg
    kind: security_group
    attributes:
      name: web
      vpc_id: ${main.id}
  - name: lb
    kind: load_balancer
    attributes:
      name: web-lb
      subnets: ["${public_a.id}"]
      security_groups: ["${web_sg.id}"]
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Create a temporary workspace and point IAC_ENGINE_HOME at it.

    Creates:
    - engine.yaml (memory provider, no retry sleeps)
    - stacks/web.yaml (vpc, subnet, security group, load balancer)
    """
    (tmp_path / 'stacks').mkdir()
    (tmp_path / 'engine.yaml').write_text("""
concurrency: 2
on_error: continue
retry:
  max_attempts: 3
  backoff: 0
provider:
  type: memory
  region: test-1
""")
    (tmp_path / 'stacks' / 'web.yaml').write_text(WEB_STACK)
    monkeypatch.setenv('IAC_ENGINE_HOME', str(tmp_path))
    return tmp_path
