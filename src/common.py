"""Common types shared by the engine modules."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ActionResult:
    """Result returned by a single resource action.

    Attributes:
        success: True if the provider call (and state write) succeeded
        message: Human-readable outcome or error message
        duration: Wall time in seconds, retries included
        identifier: Provider-assigned identifier after create/update
        outputs: Computed attributes returned by the provider
        attempts: Provider call attempts made
    """
    success: bool
    message: str = ''
    duration: float = 0.0
    identifier: Optional[str] = None
    outputs: dict = field(default_factory=dict)
    attempts: int = 0
