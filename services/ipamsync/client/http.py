"""HTTP implementation of the IPAM transport.

Talks JSON to the IPAM API with bearer token authentication. Non-2xx
responses become typed ``RemoteError`` subclasses with the message
extracted from the ``{"error": "..."}`` body (or the raw body when it has
another shape). No retries, no backoff.
"""

from typing import Any
from urllib.parse import quote as url_quote

import httpx

from ipamsync.client.protocol import ListResult
from ipamsync.errors import (
    ConflictError,
    NotFoundError,
    RemoteError,
    RemoteRejectionError,
    TransportError,
)
from ipamsync.logging_config import get_logger
from ipamsync.models import (
    Allocation,
    Block,
    Environment,
    EnvironmentDetail,
    Pool,
    ReservedBlock,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def _error_message(resp: httpx.Response) -> str:
    """Extract the API error message, falling back to the raw body."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
        return body["error"]
    return resp.text or resp.reason_phrase


def _error_for_status(status_code: int) -> type[RemoteError]:
    if status_code == 404:
        return NotFoundError
    if status_code == 409:
        return ConflictError
    if 400 <= status_code < 500:
        return RemoteRejectionError
    if status_code >= 500:
        return TransportError
    return RemoteError


def _params(**values: Any) -> dict[str, str]:
    """Build query params, omitting absent filters instead of sending empty values."""
    params: dict[str, str] = {}
    for key, value in values.items():
        if value is None or value is False or value == "":
            continue
        if isinstance(value, bool):
            params[key] = "true"
        elif isinstance(value, int):
            if value > 0:
                params[key] = str(value)
        else:
            params[key] = str(value)
    return params


def _list_result(data: Any, key: str, parse: Any) -> ListResult:
    data = data or {}
    items = [parse(item) for item in data.get(key) or []]
    total = data.get("total")
    return ListResult(items=items, total=int(total) if total is not None else len(items))


class HTTPIPAMClient:
    """IPAM API client over httpx.

    Args:
        base_url: Scheme + host of the IPAM service (e.g. https://ipam.example.com).
        token: Bearer token. Treated as opaque.
        api_prefix: Route prefix in front of every ``/<kind>s`` route.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        api_prefix: str = "/api",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = base_url.strip().rstrip("/")
        if not base_url:
            raise ValueError("base URL is required")
        if not token:
            raise ValueError("API token is required")

        self._prefix = "/" + api_prefix.strip("/") if api_prefix.strip("/") else ""
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    def _path(self, *segments: str) -> str:
        parts = [segments[0]] + [url_quote(s, safe="") for s in segments[1:]]
        return self._prefix + "/" + "/".join(parts)

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=body, params=params or None)
        except httpx.TimeoutException as e:
            raise TransportError(f"request timed out: {e}", method=method, path=path) from e
        except httpx.TransportError as e:
            raise TransportError(f"request failed: {e}", method=method, path=path) from e

        logger.debug("IPAM request", method=method, path=path, status=resp.status_code)

        if not resp.is_success:
            error_cls = _error_for_status(resp.status_code)
            raise error_cls(
                _error_message(resp),
                status_code=resp.status_code,
                method=method,
                path=path,
            )

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteError(
                f"decode response: {e}",
                status_code=resp.status_code,
                method=method,
                path=path,
            ) from e

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HTTPIPAMClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # --- Environments ---

    async def list_environments(
        self, name: str | None = None, limit: int = 0, offset: int = 0
    ) -> ListResult[Environment]:
        data = await self._request(
            "GET",
            self._path("environments"),
            params=_params(limit=limit, offset=offset, name=name),
        )
        return _list_result(data, "environments", Environment.from_api)

    async def get_environment(self, environment_id: str) -> EnvironmentDetail:
        data = await self._request("GET", self._path("environments", environment_id))
        return EnvironmentDetail.from_api(data)

    async def create_environment(self, environment: Environment) -> Environment:
        body = {
            "name": environment.name,
            "pools": [{"name": p.name, "cidr": p.cidr} for p in environment.pools],
        }
        data = await self._request("POST", self._path("environments"), body=body)
        return Environment.from_api(data)

    async def update_environment(
        self, environment_id: str, environment: Environment
    ) -> Environment:
        data = await self._request(
            "PUT",
            self._path("environments", environment_id),
            body={"name": environment.name},
        )
        return Environment.from_api(data)

    async def delete_environment(self, environment_id: str) -> None:
        await self._request("DELETE", self._path("environments", environment_id))

    # --- Pools ---

    async def list_pools(
        self, environment_id: str | None = None, limit: int = 0, offset: int = 0
    ) -> ListResult[Pool]:
        data = await self._request(
            "GET",
            self._path("pools"),
            params=_params(limit=limit, offset=offset, environment_id=environment_id),
        )
        return _list_result(data, "pools", Pool.from_api)

    async def get_pool(self, pool_id: str) -> Pool:
        data = await self._request("GET", self._path("pools", pool_id))
        return Pool.from_api(data)

    async def create_pool(self, pool: Pool) -> Pool:
        body = {"environment_id": pool.environment_id, "name": pool.name, "cidr": pool.cidr}
        data = await self._request("POST", self._path("pools"), body=body)
        return Pool.from_api(data)

    async def update_pool(self, pool_id: str, pool: Pool) -> Pool:
        body = {"name": pool.name, "cidr": pool.cidr}
        data = await self._request("PUT", self._path("pools", pool_id), body=body)
        return Pool.from_api(data)

    async def delete_pool(self, pool_id: str) -> None:
        await self._request("DELETE", self._path("pools", pool_id))

    # --- Blocks ---

    async def list_blocks(
        self,
        name: str | None = None,
        environment_id: str | None = None,
        orphaned_only: bool = False,
        limit: int = 0,
        offset: int = 0,
    ) -> ListResult[Block]:
        data = await self._request(
            "GET",
            self._path("blocks"),
            params=_params(
                limit=limit,
                offset=offset,
                name=name,
                environment_id=environment_id,
                orphaned_only=orphaned_only,
            ),
        )
        return _list_result(data, "blocks", Block.from_api)

    async def get_block(self, block_id: str) -> Block:
        data = await self._request("GET", self._path("blocks", block_id))
        return Block.from_api(data)

    async def create_block(self, block: Block) -> Block:
        body: dict[str, Any] = {"name": block.name, "cidr": block.cidr}
        if block.environment_id:
            body["environment_id"] = block.environment_id
        if block.pool_id:
            body["pool_id"] = block.pool_id
        data = await self._request("POST", self._path("blocks"), body=body)
        return Block.from_api(data)

    async def update_block(self, block_id: str, block: Block) -> Block:
        body: dict[str, Any] = {"name": block.name}
        if block.environment_id:
            body["environment_id"] = block.environment_id
        if block.pool_id:
            body["pool_id"] = block.pool_id
        data = await self._request("PUT", self._path("blocks", block_id), body=body)
        return Block.from_api(data)

    async def delete_block(self, block_id: str) -> None:
        await self._request("DELETE", self._path("blocks", block_id))

    # --- Allocations ---

    async def list_allocations(
        self,
        name: str | None = None,
        block_name: str | None = None,
        limit: int = 0,
        offset: int = 0,
    ) -> ListResult[Allocation]:
        data = await self._request(
            "GET",
            self._path("allocations"),
            params=_params(limit=limit, offset=offset, name=name, block_name=block_name),
        )
        return _list_result(data, "allocations", Allocation.from_api)

    async def get_allocation(self, allocation_id: str) -> Allocation:
        data = await self._request("GET", self._path("allocations", allocation_id))
        return Allocation.from_api(data)

    async def create_allocation(self, allocation: Allocation) -> Allocation:
        body = {
            "name": allocation.name,
            "block_name": allocation.block_name,
            "cidr": allocation.cidr,
        }
        data = await self._request("POST", self._path("allocations"), body=body)
        return Allocation.from_api(data)

    async def auto_allocate(self, allocation: Allocation) -> Allocation:
        body = {
            "name": allocation.name,
            "block_name": allocation.block_name,
            "prefix_length": allocation.prefix_length,
        }
        data = await self._request("POST", self._path("allocations", "auto"), body=body)
        return Allocation.from_api(data)

    async def update_allocation(self, allocation_id: str, allocation: Allocation) -> Allocation:
        data = await self._request(
            "PUT",
            self._path("allocations", allocation_id),
            body={"name": allocation.name},
        )
        return Allocation.from_api(data)

    async def delete_allocation(self, allocation_id: str) -> None:
        await self._request("DELETE", self._path("allocations", allocation_id))

    # --- Reserved blocks ---

    async def list_reserved_blocks(
        self, name: str | None = None, limit: int = 0, offset: int = 0
    ) -> ListResult[ReservedBlock]:
        data = await self._request(
            "GET",
            self._path("reserved-blocks"),
            params=_params(limit=limit, offset=offset, name=name),
        )
        return _list_result(data, "reserved_blocks", ReservedBlock.from_api)

    async def get_reserved_block(self, reserved_block_id: str) -> ReservedBlock:
        data = await self._request("GET", self._path("reserved-blocks", reserved_block_id))
        return ReservedBlock.from_api(data)

    async def create_reserved_block(self, reserved: ReservedBlock) -> ReservedBlock:
        body = {
            "name": reserved.name or "",
            "cidr": reserved.cidr.strip(),
            "reason": reserved.reason or "",
        }
        data = await self._request("POST", self._path("reserved-blocks"), body=body)
        return ReservedBlock.from_api(data)

    async def update_reserved_block(
        self, reserved_block_id: str, reserved: ReservedBlock
    ) -> ReservedBlock:
        data = await self._request(
            "PUT",
            self._path("reserved-blocks", reserved_block_id),
            body={"name": reserved.name or ""},
        )
        return ReservedBlock.from_api(data)

    async def delete_reserved_block(self, reserved_block_id: str) -> None:
        await self._request("DELETE", self._path("reserved-blocks", reserved_block_id))
