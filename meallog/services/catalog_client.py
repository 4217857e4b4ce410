"""HTTP client for the remote nutrition catalog.

Thin wrapper around httpx. Every operation is a JSON POST to
``{base_url}{operation}`` carrying the credential's auth object.
Transport and HTTP failures raise CatalogError; a write whose response
says ``result: fail`` raises CatalogWriteError.

Example:
    async with CatalogClient() as catalog:
        credential = await catalog.login("me@example.com", "secret")
        foods = await catalog.find_food("egg", "COMMON_FOODS", credential)
"""

import logging
from typing import Any

import httpx

from meallog.errors import AuthenticationError, CatalogError, CatalogWriteError
from meallog.orchestrator.models import CatalogCredential, Food

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://mobile.cronometer.com/api/v2/"


class CatalogClient:
    """Async client for the catalog search and write API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize with the catalog base URL.

        Args:
            base_url: API root; operations are appended to it.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "CatalogClient":
        """Open httpx async client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close httpx async client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, operation: str, payload: dict[str, Any]) -> Any:
        """POST ``payload`` to an operation and return the decoded JSON.

        Raises:
            CatalogError: On transport errors, non-2xx status, or a
                non-JSON body.
        """
        if self._client is None:
            raise CatalogError(operation, "client is not open")
        try:
            resp = await self._client.post(operation, json=payload)
        except httpx.HTTPError as e:
            raise CatalogError(operation, str(e)) from e

        if resp.status_code >= 400:
            raise CatalogError(
                operation, resp.text[:200] or resp.reason_phrase, resp.status_code
            )
        try:
            return resp.json()
        except ValueError as e:
            raise CatalogError(operation, "response is not JSON") from e

    async def login(self, email: str, password: str) -> CatalogCredential:
        """Exchange email/password for a credential.

        Raises:
            AuthenticationError: If the catalog rejects the login.
        """
        data = await self._post("login", {"username": email, "password": password})
        result = str(data.get("result", "")) if isinstance(data, dict) else ""
        session_key = data.get("sessionKey") if isinstance(data, dict) else None
        user_id = (data.get("id") or data.get("userId")) if isinstance(data, dict) else None
        if result.upper() == "FAIL" or not session_key or not user_id:
            raise AuthenticationError(email)
        logger.info("Catalog login succeeded for user id %s", user_id)
        return CatalogCredential(user_id=int(user_id), token=str(session_key))

    async def find_food(
        self, query: str, tab: str, credential: CatalogCredential
    ) -> list[Food]:
        """Search one catalog partition."""
        data = await self._post(
            "find_food",
            {"query": query, "tab": tab, "auth": credential.to_auth_payload()},
        )
        return _parse_foods(data)

    async def get_foods(
        self, ids: list[int], credential: CatalogCredential
    ) -> list[Food]:
        """Fetch full food records (with measures) by id."""
        data = await self._post(
            "get_foods", {"ids": ids, "auth": credential.to_auth_payload()}
        )
        return _parse_foods(data)

    async def add_servings(
        self, servings: list[dict[str, Any]], credential: CatalogCredential
    ) -> dict[str, Any]:
        """Write a batch of servings.

        Raises:
            CatalogWriteError: If the response reports ``result: fail``.
        """
        data = await self._post(
            "multi_add_serving",
            {"servings": servings, "auth": credential.to_auth_payload()},
        )
        if isinstance(data, dict) and str(data.get("result", "")).lower() == "fail":
            raise CatalogWriteError("multi_add_serving", str(data.get("error", "result=fail")))
        return data if isinstance(data, dict) else {"raw": data}


def _parse_foods(data: Any) -> list[Food]:
    """Extract the ``foods`` list from a catalog response."""
    if not isinstance(data, dict):
        return []
    return [
        Food.model_validate({**item, "measures": item.get("measures") or []})
        for item in data.get("foods") or []
    ]
