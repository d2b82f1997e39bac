from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import requests

from config import Settings, get_settings
from errors import (
    QuickBooksNotConfigured,
    RefreshTokenExpired,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnauthorized,
)

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"
DEFAULT_SCOPES = (ACCOUNTING_SCOPE,)
DEFAULT_ACCESS_TOKEN_TTL = 3600

REFRESH_EXPIRED_RE = re.compile(r"refresh_token.*expired|token.*expired", re.IGNORECASE)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int = DEFAULT_ACCESS_TOKEN_TTL
    refresh_expires_in: Optional[int] = None
    realm_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict, realm_id: Optional[str] = None) -> "TokenGrant":
        try:
            return cls(
                access_token=payload["access_token"],
                refresh_token=payload["refresh_token"],
                expires_in=int(payload.get("expires_in") or DEFAULT_ACCESS_TOKEN_TTL),
                refresh_expires_in=(
                    int(payload["x_refresh_token_expires_in"])
                    if payload.get("x_refresh_token_expires_in") is not None
                    else None
                ),
                realm_id=payload.get("realmId") or realm_id,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError("Unexpected QuickBooks token response") from exc


def _error_payload(response: requests.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def is_refresh_expired_response(response: requests.Response) -> bool:
    if response.status_code != 400:
        return False
    payload = _error_payload(response)
    if payload.get("error") == "invalid_grant":
        return True
    detail = payload.get("error_description") or response.text or ""
    return bool(REFRESH_EXPIRED_RE.search(detail))


class QuickBooksClient:
    """Thin wrapper over the Intuit OAuth and reports endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.http = http or requests.Session()

    @property
    def configured(self) -> bool:
        return self.settings.quickbooks_configured

    def _credentials(self) -> tuple[str, str]:
        if not self.configured:
            raise QuickBooksNotConfigured(
                "QuickBooks not configured: set QUICKBOOKS_CLIENT_ID and "
                "QUICKBOOKS_CLIENT_SECRET (or *_SANDBOX for sandbox)"
            )
        return self.settings.qb_client_id, self.settings.qb_client_secret

    def authorize_url(self, state: str, scopes: Optional[tuple[str, ...]] = None) -> str:
        client_id, _ = self._credentials()
        query = urlencode(
            {
                "client_id": client_id,
                "response_type": "code",
                "scope": " ".join(scopes or DEFAULT_SCOPES),
                "redirect_uri": self.settings.qb_redirect_uri,
                "state": state,
            }
        )
        return f"{AUTHORIZE_URL}?{query}"

    def _token_request(self, data: dict[str, str]) -> requests.Response:
        try:
            return self.http.post(
                TOKEN_URL,
                data=data,
                auth=self._credentials(),
                headers={"Accept": "application/json"},
                timeout=self.settings.qb_timeout_secs,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeout("QuickBooks token request timed out") from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"QuickBooks token request failed: {exc}") from exc

    def exchange_code(self, code: str, realm_id: Optional[str] = None) -> TokenGrant:
        response = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.qb_redirect_uri,
            }
        )
        if response.status_code != 200:
            payload = _error_payload(response)
            raise UpstreamError(
                f"QuickBooks code exchange failed: {response.status_code} "
                f"{payload.get('error', '')} {payload.get('error_description') or response.text}",
                status_code=response.status_code,
            )
        return TokenGrant.from_payload(response.json(), realm_id=realm_id)

    def refresh_tokens(self, refresh_token: str) -> TokenGrant:
        response = self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        if response.status_code != 200:
            payload = _error_payload(response)
            error_code = payload.get("error", "")
            detail = payload.get("error_description") or response.text
            if is_refresh_expired_response(response):
                raise RefreshTokenExpired(
                    "QuickBooks connection expired. Please reconnect QuickBooks for "
                    f"this location. (Intuit: {error_code} - {detail})"
                )
            raise UpstreamError(
                f"QuickBooks token refresh failed: {response.status_code} "
                f"{error_code} - {detail}",
                status_code=response.status_code,
            )
        return TokenGrant.from_payload(response.json())

    def _get_with_deadline(self, url: str, **kwargs) -> requests.Response:
        """GET and read the whole body, giving up once ``qb_timeout_secs`` has passed.

        The ``timeout`` requests takes applies to the connect and to each socket
        read, so a server trickling bytes could hold a call open forever. The
        request runs in a worker thread and the caller stops waiting at the cap.
        """
        cap = self.settings.qb_timeout_secs
        opened: list[requests.Response] = []

        def run() -> requests.Response:
            response = self.http.get(url, timeout=cap, stream=True, **kwargs)
            opened.append(response)
            # reading .content pulls the full body inside the worker
            response.content
            return response

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="qb-http")
        future = pool.submit(run)
        try:
            return future.result(timeout=cap)
        except FutureTimeout as exc:
            for response in opened:
                response.close()
            raise requests.Timeout(f"no complete response within {cap:g}s") from exc
        finally:
            pool.shutdown(wait=False)

    def fetch_profit_and_loss(
        self,
        realm_id: str,
        start_date: str,
        end_date: str,
        accounting_method: str,
        access_token: str,
        class_id: Optional[str] = None,
    ) -> dict:
        params = {
            "start_date": start_date,
            "end_date": end_date,
            "accounting_method": accounting_method,
        }
        if class_id:
            params["class"] = class_id
        url = f"{self.settings.qb_api_base}/v3/company/{realm_id}/reports/ProfitAndLoss"
        try:
            response = self._get_with_deadline(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except requests.Timeout as exc:
            logger.warning("pnl_timeout: realm=%s cap=%s", realm_id, self.settings.qb_timeout_secs)
            raise UpstreamTimeout(
                "QuickBooks P&L request timed out. The service may be slow or unreachable."
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"QuickBooks P&L request failed: {exc}") from exc

        if response.status_code == 401:
            raise UpstreamUnauthorized(
                f"QuickBooks P&L request failed: 401 Unauthorized. {response.text}",
                status_code=401,
            )
        if not response.ok:
            raise UpstreamError(
                f"QuickBooks P&L request failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("QuickBooks P&L response was not valid JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamError("QuickBooks P&L response was not a report")
        return payload

    def fetch_company_name(self, realm_id: str, access_token: str) -> Optional[str]:
        url = f"{self.settings.qb_api_base}/v3/company/{realm_id}/companyinfo/{realm_id}"
        try:
            response = self._get_with_deadline(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()
            info = response.json().get("CompanyInfo", {})
        except (requests.RequestException, ValueError, AttributeError):
            logger.warning("company_name_lookup_failed: realm=%s", realm_id)
            return None
        return info.get("CompanyName") or info.get("LegalName")
