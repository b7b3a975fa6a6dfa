"""
OAuthClient -- token endpoint calls for the external ledger.

Contract:
    refresh(tenant_id, refresh_token) and exchange_code(tenant_id, code,
    redirect_uri) POST form-encoded grants with HTTP Basic client
    authentication and return a TokenGrant.

Failure modes:
    - CredentialError: the grant itself was refused (invalid_grant,
      unauthorized_client, invalid_client, or any HTTP 400/401).  The caller
      must treat the tenant as needing manual reconnection.
    - TransientNetworkError: timeouts, transport errors, 429, 5xx, other
      unexpected statuses and unparseable success bodies.

Token material never appears in exceptions or log records.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import httpx

from amortization_kernel.domain.clock import Clock, SystemClock
from amortization_kernel.domain.dtos import TokenGrant
from amortization_kernel.exceptions import CredentialError, TransientNetworkError
from amortization_kernel.logging_config import get_logger
from amortization_kernel.services.retry import parse_retry_after

logger = get_logger("services.oauth_client")

DEFAULT_EXPIRES_IN = 1800

_GRANT_REFUSALS = frozenset({"invalid_grant", "unauthorized_client", "invalid_client"})


class OAuthClient:
    """Token endpoint client; one instance per run, sharing an httpx.Client."""

    def __init__(
        self,
        http_client: httpx.Client,
        token_url: str,
        client_id: str,
        client_secret: str,
        clock: Clock | None = None,
    ):
        self._http = http_client
        self._token_url = token_url
        self._auth = httpx.BasicAuth(client_id, client_secret)
        self._clock = clock or SystemClock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(token_url={self._token_url!r})"

    def refresh(self, tenant_id: str, refresh_token: str) -> TokenGrant:
        return self._request_grant(
            tenant_id,
            "refresh",
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    def exchange_code(self, tenant_id: str, code: str, redirect_uri: str) -> TokenGrant:
        return self._request_grant(
            tenant_id,
            "authorization_code",
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )

    def _request_grant(self, tenant_id: str, kind: str, form: dict[str, str]) -> TokenGrant:
        try:
            response = self._http.post(
                self._token_url,
                data=form,
                auth=self._auth,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"token {kind} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(
                f"token {kind} transport error: {type(exc).__name__}"
            ) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientNetworkError(
                f"token endpoint returned HTTP {status}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        body = _json_or_empty(response)
        error = body.get("error") if isinstance(body, dict) else None

        if status in (400, 401) or error in _GRANT_REFUSALS:
            reason = error or f"http_{status}"
            description = body.get("error_description") if isinstance(body, dict) else None
            if description:
                reason = f"{reason}: {description}"
            logger.warning(
                "token_grant_refused",
                extra={"tenant_id": tenant_id, "grant": kind, "status_code": status, "reason": reason},
            )
            raise CredentialError(tenant_id, reason)

        if status != 200:
            raise TransientNetworkError(
                f"token endpoint returned unexpected HTTP {status}", status_code=status,
            )

        access = body.get("access_token") if isinstance(body, dict) else None
        if not access:
            raise TransientNetworkError("token endpoint response has no access_token", status_code=status)

        try:
            expires_in = int(body.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        return TokenGrant(
            access_token=access,
            refresh_token=body.get("refresh_token") or None,
            expires_at=self._clock.now_utc() + timedelta(seconds=expires_in),
            scopes=body.get("scope"),
        )


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}
