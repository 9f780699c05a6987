"""Payment provider connectors."""

from typing import Dict, Optional

import httpx

from ..config import Settings
from .base import (
    CallbackChannel,
    CallbackNotification,
    ConnectorBase,
    InitiationResult,
    ResolutionStrategy,
    VerifiedOutcome,
)
from .ameriabank import AmeriabankConnector
from .fastshift import FastshiftConnector
from .idram import IdramConnector
from .telcell import TelcellConnector


def build_connectors(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, ConnectorBase]:
    """Instantiate every supported connector, keyed by provider name.

    Unconfigured providers are still registered; ``is_configured()`` tells
    the services to refuse them.
    """
    app_url = settings.base_url
    timeout = settings.provider_timeout_seconds
    connectors = [
        AmeriabankConnector(settings.ameriabank, app_url, http_client, timeout),
        FastshiftConnector(settings.fastshift, app_url, http_client, timeout),
        IdramConnector(settings.idram, app_url, http_client, timeout),
        TelcellConnector(settings.telcell, app_url, http_client, timeout),
    ]
    return {c.name.value: c for c in connectors}


__all__ = [
    # Base classes and models
    "ConnectorBase",
    "CallbackChannel",
    "CallbackNotification",
    "InitiationResult",
    "ResolutionStrategy",
    "VerifiedOutcome",
    # Connectors
    "AmeriabankConnector",
    "FastshiftConnector",
    "IdramConnector",
    "TelcellConnector",
    "build_connectors",
]
