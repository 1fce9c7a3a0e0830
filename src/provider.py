"""Provider boundary for resource lifecycle calls.

The engine treats a provider as an opaque capability:

    create(context, kind, attributes) -> (identifier, computed attributes)
    update(context, identifier, attributes) -> computed attributes
    delete(context, identifier) -> None

Errors are classified so the executor knows whether to retry:
TransientProviderError (rate limiting, 5xx, connection trouble) is retried
per the retry policy; PermanentProviderError (validation, 4xx) fails the
resource immediately.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import requests

from config import ConfigError, EngineConfig, ProviderContext

logger = logging.getLogger(__name__)

# HTTP statuses that are worth retrying
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

# Request errors caused by the configuration, not the network
PERMANENT_REQUEST_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
    requests.exceptions.TooManyRedirects,
)


class ProviderError(Exception):
    """Base exception for provider call failures."""


class TransientProviderError(ProviderError):
    """Provider call failed in a way that may succeed on retry."""


class PermanentProviderError(ProviderError):
    """Provider call failed and retrying will not help."""


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider implementations."""

    def create(self, context: ProviderContext, kind: str, attributes: dict) -> tuple[str, dict]:
        """Create a resource; return (identifier, computed attributes)."""

    def update(self, context: ProviderContext, identifier: str, attributes: dict) -> dict:
        """Update a resource in place; return computed attributes."""

    def delete(self, context: ProviderContext, identifier: str) -> None:
        """Delete a resource."""


class MemoryProvider:
    """In-memory provider for local runs and tests.

    Generates identifiers as '{kind}-{n}' and fills in the computed
    attributes the built-in kinds declare (arn, dns_name, fqdn, ...).
    Deleting an unknown identifier is acknowledged, so destroy is idempotent.

    With a path, objects are loaded from and saved to a JSON file after
    every change, so later runs can update what earlier runs created.
    """

    def __init__(self, path: Optional[Path] = None):
        self._lock = threading.Lock()
        self.path = Path(path) if path is not None else None
        self.objects: dict[str, dict] = {}
        self._next = 1
        if self.path is not None:
            self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read memory provider data {self.path}: {e}")
        objects = data.get('objects') if isinstance(data, dict) else None
        if not isinstance(objects, dict):
            raise ConfigError(f"{self.path} must contain an 'objects' mapping")
        next_id = data.get('next_id', 1)
        if not isinstance(next_id, int) or next_id < 1:
            raise ConfigError(f"{self.path} has an invalid next_id: {next_id!r}")
        self.objects = objects
        self._next = next_id
        logger.debug(f"[memory] loaded {len(objects)} object(s) from {self.path}")

    def _save(self, snapshot: tuple) -> None:
        """Write objects to disk; restore the snapshot if the write fails."""
        if self.path is None:
            return
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix='.memory-', suffix='.tmp', dir=self.path.parent)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({'next_id': self._next, 'objects': self.objects}, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            self.objects, self._next = snapshot
            raise PermanentProviderError(f"Cannot save memory provider data {self.path}: {e}")

    def _snapshot(self) -> tuple:
        return copy.deepcopy(self.objects), self._next

    def create(self, context: ProviderContext, kind: str, attributes: dict) -> tuple[str, dict]:
        with self._lock:
            snapshot = self._snapshot()
            identifier = f'{kind}-{self._next}'
            self._next += 1
            computed = self._computed(context, kind, identifier, attributes)
            self.objects[identifier] = {'kind': kind, 'attributes': dict(attributes), **computed}
            self._save(snapshot)
        logger.debug(f"[memory] created {identifier}")
        return identifier, computed

    def update(self, context: ProviderContext, identifier: str, attributes: dict) -> dict:
        with self._lock:
            obj = self.objects.get(identifier)
            if obj is None:
                raise PermanentProviderError(f"Resource {identifier} not found")
            snapshot = self._snapshot()
            obj['attributes'] = dict(attributes)
            computed = self._computed(context, obj['kind'], identifier, attributes)
            obj.update(computed)
            self._save(snapshot)
        logger.debug(f"[memory] updated {identifier}")
        return computed

    def delete(self, context: ProviderContext, identifier: str) -> None:
        with self._lock:
            if identifier in self.objects:
                snapshot = self._snapshot()
                del self.objects[identifier]
                self._save(snapshot)
        logger.debug(f"[memory] deleted {identifier}")

    @staticmethod
    def _computed(context: ProviderContext, kind: str, identifier: str, attributes: dict) -> dict:
        region = context.region or 'local'
        computed = {'arn': f'arn:memory:{region}:{kind}/{identifier}'}
        if kind == 'vpc':
            computed['default_route_table_id'] = f'rtb-{identifier}'
        elif kind == 'load_balancer':
            computed['dns_name'] = f"{attributes.get('name', identifier)}.{region}.elb.local"
            computed['zone_id'] = f'Z-{region}'
        elif kind == 'dns_record':
            computed = {'fqdn': str(attributes.get('name', identifier))}
        elif kind == 'certificate':
            computed['status'] = 'ISSUED'
        return computed


class HttpProvider:
    """REST provider backed by a control-plane API.

    Endpoints (relative to context.endpoint):
        POST   /v1/resources/{kind}      body: attributes -> {id, attributes}
        PATCH  /v1/resources/id/{id}     body: attributes -> {attributes}
        DELETE /v1/resources/id/{id}
    """

    def __init__(self, timeout: int = 30, session: requests.Session | None = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, context: ProviderContext) -> dict:
        headers = {'Accept': 'application/json'}
        if context.token:
            headers['Authorization'] = f'Bearer {context.token}'
        if context.region:
            headers['X-Region'] = context.region
        return headers

    def _request(self, context: ProviderContext, method: str, path: str, body: dict | None = None):
        if not context.endpoint:
            raise PermanentProviderError("Provider endpoint not configured")
        url = f"{context.endpoint.rstrip('/')}{path}"
        try:
            resp = self.session.request(
                method, url,
                json=body,
                headers=self._headers(context),
                timeout=self.timeout,
                verify=context.verify_tls,
            )
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {context.endpoint}: {e}")
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"Timeout calling {method} {url}")
        except PERMANENT_REQUEST_ERRORS as e:
            raise PermanentProviderError(f"Cannot call {method} {url}: {e}")
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"{method} {path} failed: {e}")

        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientProviderError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:200]}"
            )
        return resp

    @staticmethod
    def _json(resp) -> dict:
        try:
            data = resp.json()
        except ValueError:
            raise PermanentProviderError(f"Provider returned invalid JSON: {resp.text[:100]}")
        if not isinstance(data, dict):
            raise PermanentProviderError("Provider response must be a JSON object")
        return data

    def create(self, context: ProviderContext, kind: str, attributes: dict) -> tuple[str, dict]:
        resp = self._request(context, 'POST', f'/v1/resources/{kind}', attributes)
        if resp.status_code not in (200, 201):
            raise PermanentProviderError(
                f"Create {kind} failed ({resp.status_code}): {resp.text[:200]}"
            )
        data = self._json(resp)
        if 'id' not in data:
            raise PermanentProviderError(f"Create {kind} response missing 'id'")
        return str(data['id']), dict(data.get('attributes') or {})

    def update(self, context: ProviderContext, identifier: str, attributes: dict) -> dict:
        resp = self._request(context, 'PATCH', f'/v1/resources/id/{identifier}', attributes)
        if resp.status_code != 200:
            raise PermanentProviderError(
                f"Update {identifier} failed ({resp.status_code}): {resp.text[:200]}"
            )
        return dict(self._json(resp).get('attributes') or {})

    def delete(self, context: ProviderContext, identifier: str) -> None:
        resp = self._request(context, 'DELETE', f'/v1/resources/id/{identifier}')
        if resp.status_code == 404:
            logger.info(f"Resource {identifier} already gone")
            return
        if resp.status_code not in (200, 202, 204):
            raise PermanentProviderError(
                f"Delete {identifier} failed ({resp.status_code}): {resp.text[:200]}"
            )


def get_provider(config: EngineConfig, state_path: Optional[Path] = None) -> Provider:
    """Build the provider named by the engine configuration.

    The memory provider keeps its objects beside the stack state file
    ({state}.memory.json) when state_path is given.

    Raises:
        ConfigError: If the provider type is unknown
    """
    if config.provider_type == 'memory':
        if state_path is None:
            return MemoryProvider()
        return MemoryProvider(memory_path_for(state_path))
    if config.provider_type == 'http':
        return HttpProvider()
    raise ConfigError(f"Unknown provider type '{config.provider_type}'")


def memory_path_for(state_path: Path) -> Path:
    """Memory provider data file for a state document."""
    state_path = Path(state_path)
    return state_path.with_name(f'{state_path.stem}.memory.json')
