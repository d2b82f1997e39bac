"""Access-token lifecycle for QuickBooks realms.

Tokens are refreshed proactively when the cached access token is within
``ACCESS_TOKEN_BUFFER`` of expiry, and reactively (once) when the API answers
a call with an unauthorized error.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import (
    AppError,
    QuickBooksNotConfigured,
    RefreshTokenExpired,
    UpstreamUnauthorized,
)
from models import Location, Realm
from quickbooks import QuickBooksClient, TokenGrant

logger = logging.getLogger(__name__)

ACCESS_TOKEN_BUFFER = timedelta(minutes=5)
UNAUTHORIZED_RE = re.compile(
    r"401|Unauthorized|AuthorizationFailure|Authorization Fault", re.IGNORECASE
)

T = TypeVar("T")


def is_unauthorized(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamUnauthorized):
        return True
    if isinstance(exc, AppError):
        return bool(UNAUTHORIZED_RE.search(exc.message))
    return False


def call_with_reauth(
    attempt: Callable[[], T],
    reauthenticate: Callable[[BaseException], None],
    *,
    retries: int = 1,
    should_retry: Callable[[BaseException], bool] = is_unauthorized,
) -> T:
    """Run ``attempt``; after a retryable failure re-authenticate and try again.

    At most ``retries`` extra attempts are made; the last failure propagates.
    """
    used = 0
    while True:
        try:
            return attempt()
        except Exception as exc:
            if used >= retries or not should_retry(exc):
                raise
            used += 1
            reauthenticate(exc)


class TokenManager:
    def __init__(
        self,
        session: Session,
        client: QuickBooksClient,
        *,
        buffer: timedelta = ACCESS_TOKEN_BUFFER,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session = session
        self.client = client
        self.buffer = buffer
        self.clock = clock or datetime.utcnow

    def _realm_for(self, location: Location) -> Realm:
        if location.realm is None:
            raise AppError(
                "Location has no QuickBooks realm",
                details={"location_id": location.id},
            )
        if not location.realm.refresh_token:
            raise AppError(
                "Location has no QuickBooks refresh token; connect QuickBooks for "
                "this location.",
                details={"location_id": location.id},
            )
        return location.realm

    def _store_grant(self, realm: Realm, grant: TokenGrant) -> Realm:
        now = self.clock()
        realm.access_token = grant.access_token
        realm.refresh_token = grant.refresh_token
        realm.expires_at = now + timedelta(seconds=grant.expires_in)
        if grant.refresh_expires_in is not None:
            realm.refresh_expires_at = now + timedelta(seconds=grant.refresh_expires_in)
        self.session.commit()
        return realm

    def access_token_fresh(self, realm: Realm) -> bool:
        if not realm.access_token or realm.expires_at is None:
            return False
        return realm.expires_at > self.clock() + self.buffer

    def refresh_realm(self, realm: Realm) -> Realm:
        if not realm.refresh_token:
            raise AppError("No refresh token; connect QuickBooks first.")
        grant = self.client.refresh_tokens(realm.refresh_token)
        logger.info("token_refreshed: realm=%s", realm.id)
        return self._store_grant(realm, grant)

    def get_valid_access_token(self, location: Location) -> str:
        if not self.client.configured:
            raise QuickBooksNotConfigured()
        realm = self._realm_for(location)
        if self.access_token_fresh(realm):
            return realm.access_token
        try:
            self.refresh_realm(realm)
        except RefreshTokenExpired as exc:
            exc.details.setdefault("location_id", location.id)
            raise
        return realm.access_token

    def with_valid_token(
        self,
        location: Location,
        operation: Callable[[str, str, Optional[str]], T],
    ) -> T:
        """Call ``operation(access_token, realm_id, class_id)`` with a valid token.

        An unauthorized failure triggers one refresh followed by one retry.
        """
        realm = self._realm_for(location)

        def attempt() -> T:
            token = self.get_valid_access_token(location)
            return operation(token, realm.external_id, location.class_id)

        def reauthenticate(original: BaseException) -> None:
            logger.warning(
                "token_reactive_refresh: location_id=%s realm=%s",
                location.id,
                realm.id,
            )
            try:
                self.refresh_realm(realm)
            except RefreshTokenExpired as refresh_exc:
                logger.error(
                    "token_reactive_refresh_expired: location_id=%s", location.id
                )
                raise RefreshTokenExpired(
                    "QuickBooks refresh token for this location is stale or expired. "
                    "Reconnect QuickBooks for this location.",
                    details={"location_id": location.id},
                ) from refresh_exc
            except AppError as refresh_exc:
                logger.error(
                    "token_reactive_refresh_failed: location_id=%s error=%s",
                    location.id,
                    refresh_exc,
                )
                raise original from refresh_exc

        return call_with_reauth(attempt, reauthenticate)

    def realms_due_for_refresh(self) -> list[Realm]:
        realms = self.session.scalars(
            select(Realm).where(Realm.refresh_token.is_not(None)).order_by(Realm.id)
        ).all()
        return [realm for realm in realms if not self.access_token_fresh(realm)]
