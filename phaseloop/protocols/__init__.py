"""
phaseloop - Protocol strategies and selection.

The strategy is chosen by name, or from the environment:

- ``PHASELOOP_PROTOCOL``: ``two-stage`` or ``standard``.
- ``TWO_STAGE_ENABLED``: legacy flag; ``false`` selects ``standard``.

The default is ``two-stage``.
"""

import os
from typing import Any, Optional

from ..exceptions import ValidationError
from ..gateway import ToolExecutionGateway
from .base import ProtocolStrategy
from .standard import StandardProtocol
from .two_stage import PhaseCycleController, TwoStageProtocol

PROTOCOLS: dict[str, type] = {
    "two-stage": TwoStageProtocol,
    "standard": StandardProtocol,
}


def _protocol_name_from_env() -> str:
    name = os.getenv("PHASELOOP_PROTOCOL")
    if name and name.strip():
        return name.strip().lower()
    legacy = os.getenv("TWO_STAGE_ENABLED")
    if legacy is not None and legacy.strip().lower() in {"0", "false", "no", "off"}:
        return "standard"
    return "two-stage"


def create_protocol(
    name: Optional[str] = None,
    gateway: Optional[ToolExecutionGateway] = None,
    **kwargs: Any,
) -> ProtocolStrategy:
    """Build the protocol strategy named ``name`` (or the configured one).

    Raises:
        ValidationError: Unknown protocol name.
    """
    key = (name or _protocol_name_from_env()).strip().lower().replace("_", "-")
    cls = PROTOCOLS.get(key)
    if cls is None:
        raise ValidationError(
            f"Unknown protocol: {name or key}. Expected one of: {', '.join(PROTOCOLS)}",
            field="protocol",
        )
    return cls(gateway=gateway, **kwargs)


__all__ = [
    "PROTOCOLS",
    "PhaseCycleController",
    "ProtocolStrategy",
    "StandardProtocol",
    "TwoStageProtocol",
    "create_protocol",
]
