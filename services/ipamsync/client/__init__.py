"""
Remote IPAM client layer for ipamsync.

Provides create_client() to build the authenticated transport from
settings. The client is passed explicitly to every consumer; there is no
module-level instance.
"""

from __future__ import annotations

import httpx

from ipamsync.client.http import HTTPIPAMClient
from ipamsync.client.protocol import IPAMTransport, ListResult
from ipamsync.config import Settings
from ipamsync.errors import ValidationError
from ipamsync.logging_config import get_logger

logger = get_logger(__name__)

__all__ = ["HTTPIPAMClient", "IPAMTransport", "ListResult", "create_client"]


def create_client(
    cfg: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> IPAMTransport:
    """Build the IPAM client from configuration.

    Raises ValidationError if the endpoint or token is missing.
    """
    if not cfg.endpoint.strip():
        raise ValidationError("endpoint is required", operation="configure")
    if not cfg.token:
        raise ValidationError("token is required", operation="configure")

    client = HTTPIPAMClient(
        base_url=cfg.endpoint,
        token=cfg.token,
        api_prefix=cfg.api_prefix,
        timeout_seconds=cfg.timeout_seconds,
        transport=transport,
    )
    logger.info("IPAM client initialized", endpoint=cfg.endpoint.rstrip("/"))
    return client
