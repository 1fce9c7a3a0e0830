"""Pre-flight validation checks for stack runs.

Readiness checks that run before plan, apply or destroy touch anything,
catching configuration issues early with actionable error messages.
"""

import logging
import os
from pathlib import Path

import requests
import urllib3

from config import EngineConfig

# Suppress SSL warnings for self-signed control-plane certs (verify_tls: false)
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Provider Validation
# -----------------------------------------------------------------------------

def validate_credentials(config: EngineConfig) -> list[str]:
    """Validate provider credentials were resolved from secrets.yaml.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    if not config.credentials_key:
        return errors

    credentials = config.get_credentials()
    if not credentials.get('token'):
        errors.append(
            f"Credentials '{config.credentials_key}' have no token\n"
            f"  Add: credentials.{config.credentials_key}.token to {config.workspace / 'secrets.yaml'}"
        )
    return errors


def validate_provider_endpoint(endpoint: str, token: str = '', timeout: float = 10.0,
                               verify_tls: bool = True) -> list[str]:
    """Validate the provider API is reachable and accepts the token.

    Args:
        endpoint: Provider API base URL
        token: Bearer token (optional)
        timeout: Request timeout in seconds
        verify_tls: Verify the endpoint certificate (false for self-signed)

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not endpoint:
        errors.append(
            "Provider endpoint not configured\n"
            "  Add 'provider.endpoint' to engine.yaml"
        )
        return errors

    headers = {'Authorization': f'Bearer {token}'} if token else {}
    try:
        resp = requests.get(
            f"{endpoint.rstrip('/')}/v1/health",
            headers=headers,
            verify=verify_tls,
            timeout=timeout,
        )

        if resp.status_code in (401, 403):
            errors.append(
                f"Provider rejected credentials ({resp.status_code})\n"
                f"  Check the token in secrets.yaml"
            )
        elif resp.status_code != 200:
            errors.append(
                f"Unexpected provider response: {resp.status_code}\n"
                f"  Response: {resp.text[:100]}"
            )
        else:
            logger.info(f"Provider endpoint {endpoint} is healthy")

    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to {endpoint}\n"
            f"  Check: endpoint URL, network access, firewall"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to {endpoint}")
    except requests.exceptions.RequestException as e:
        errors.append(
            f"Cannot reach {endpoint}: {e}\n"
            f"  Check: provider.endpoint in engine.yaml (scheme, host, port)"
        )

    return errors


# -----------------------------------------------------------------------------
# State Validation
# -----------------------------------------------------------------------------

def validate_state_path(state_path: Path) -> list[str]:
    """Validate the state document location is writable.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if state_path.exists() and not state_path.is_file():
        errors.append(f"State path {state_path} exists but is not a file")
        return errors

    # Nearest existing ancestor must be writable (parents are created on write)
    parent = state_path.parent
    while not parent.exists() and parent != parent.parent:
        parent = parent.parent
    if not os.access(parent, os.W_OK):
        errors.append(
            f"State directory not writable: {parent}\n"
            f"  Fix permissions or set 'state_path' in engine.yaml"
        )

    return errors


# -----------------------------------------------------------------------------
# Combined Validation
# -----------------------------------------------------------------------------

def validate_readiness(config: EngineConfig, state_path: Path, timeout: float = 10.0) -> list[str]:
    """Run all readiness checks for a stack run.

    Provider checks are skipped for the memory provider.

    Args:
        config: Engine configuration
        state_path: State document path for the stack
        timeout: Connection timeout for network checks

    Returns:
        Combined list of all validation errors
    """
    errors = validate_state_path(state_path)

    if config.provider_type == 'memory':
        return errors

    credential_errors = validate_credentials(config)
    errors.extend(credential_errors)
    if not credential_errors:
        errors.extend(validate_provider_endpoint(
            endpoint=config.endpoint,
            token=config.get_credentials().get('token', ''),
            timeout=timeout,
            verify_tls=config.verify_tls,
        ))

    return errors


def format_preflight_errors(errors: list[str]) -> str:
    """Format errors for display, one marked entry per error."""
    lines = ["", "Pre-flight validation failed:"]
    for error in errors:
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            lines.append(f"{prefix}{line}")
    lines.append("")
    lines.append("Use --skip-preflight to bypass these checks")
    return '\n'.join(lines)
