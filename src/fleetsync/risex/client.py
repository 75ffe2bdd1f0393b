"""
Async HTTP wrapper around the Rise-X account server and Diana API.

Stateless: every call takes the bearer token it should use and opens its own
httpx.AsyncClient, so one RiseXClient can be shared by every user and task.

Calls never raise on an HTTP error status. They return an UpstreamResponse
and leave retry/failure policy to the caller. Only a transport failure (DNS,
connect, read timeout), where there is no status to return, raises
UpstreamUnavailableError.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

TOKEN_PATH = "/connect/token"
REVOCATION_PATH = "/connect/revocation"
USERINFO_PATH = "/connect/userinfo"

OPEN_WORK_PATH = "/api/v3/work/user/open"
WORK_PATH = "/api/v3/work"
THING_PATH = "/api/v3/thing"
FLOW_PATH = "/api/v3/flow"
GRAPHQL_WORKS_PATH = "/api/v3/graphql/works"


class UpstreamUnavailableError(RuntimeError):
    """Raised when a request produced no HTTP response at all."""


@dataclass(frozen=True)
class UpstreamResponse:
    """(status, body) pair. body is parsed JSON, or the raw text if not JSON."""

    status: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_message(self) -> str:
        """Best human-readable reason for a non-success response."""
        if isinstance(self.body, dict):
            reason = self.body.get("error_description") or self.body.get("error")
            if reason:
                return str(reason)
        return f"HTTP {self.status}"


class RiseXClient:
    """
    Thin async wrapper over the upstream endpoints.

    Args:
        api_base_url: Diana API root, e.g. "https://api.idiana.io".
        account_base_url: OAuth server root, e.g. "https://account.rise-x.io".
        client_id: Public OAuth client id (PKCE, no secret).
        timeout: Per-call timeout in seconds.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        api_base_url: str,
        account_base_url: str,
        client_id: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.account_base_url = account_base_url.rstrip("/")
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport

    async def _send(self, method: str, url: str, **kwargs) -> UpstreamResponse:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError(f"{method} {url}: {exc}") from exc

        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = response.text
        if response.status_code >= 400:
            logger.debug("%s %s -> %s", method, url, response.status_code)
        return UpstreamResponse(status=response.status_code, body=body)

    @staticmethod
    def _bearer(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    # ─── OAuth ────────────────────────────────────────────────────────────────

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str
    ) -> UpstreamResponse:
        """Authorization-code grant (PKCE)."""
        return await self._send(
            "POST",
            self.account_base_url + TOKEN_PATH,
            data={
                "client_id": self.client_id,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
        )

    async def refresh_token(self, refresh_token: str) -> UpstreamResponse:
        """Refresh-token grant."""
        return await self._send(
            "POST",
            self.account_base_url + TOKEN_PATH,
            data={
                "client_id": self.client_id,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

    async def revoke_token(self, token: str) -> UpstreamResponse:
        return await self._send(
            "POST",
            self.account_base_url + REVOCATION_PATH,
            data={"client_id": self.client_id, "token": token},
        )

    async def get_user_info(self, access_token: str) -> UpstreamResponse:
        return await self._send(
            "GET", self.account_base_url + USERINFO_PATH, headers=self._bearer(access_token)
        )

    # ─── Listings ─────────────────────────────────────────────────────────────

    async def list_open_work(self, token: str, flow_origin_id: str) -> UpstreamResponse:
        """Open work items of one workflow."""
        return await self._send(
            "GET",
            self.api_base_url + OPEN_WORK_PATH,
            params={"flowOriginId": flow_origin_id},
            headers=self._bearer(token),
        )

    async def list_work(self, token: str) -> UpstreamResponse:
        """Catch-all work listing (whatever the token's user can see)."""
        return await self._send(
            "GET", self.api_base_url + WORK_PATH, headers=self._bearer(token)
        )

    async def list_things(self, token: str, thing_type_id: str) -> UpstreamResponse:
        """Every thing of one asset registry."""
        return await self._send(
            "GET",
            self.api_base_url + THING_PATH,
            params={"thingTypeId": thing_type_id},
            headers=self._bearer(token),
        )

    async def get_flow(self, token: str, flow_id: str) -> UpstreamResponse:
        return await self._send(
            "GET", f"{self.api_base_url}{FLOW_PATH}/{flow_id}", headers=self._bearer(token)
        )

    # ─── GraphQL ──────────────────────────────────────────────────────────────

    async def query_works(self, token: str, query: str) -> UpstreamResponse:
        """POST a works GraphQL query. See risex.graphql for the builder."""
        return await self._send(
            "POST",
            self.api_base_url + GRAPHQL_WORKS_PATH,
            json={"query": query},
            headers=self._bearer(token),
        )
