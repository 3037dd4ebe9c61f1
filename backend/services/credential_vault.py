"""
Credential Vault - Per-tenant bearer tokens with expiry tracking

Holds each clinic's client credentials and the last token issued for it.
A token is usable while now < expires_at - 5 minutes; after that the next
get_token() call performs a fresh client-credentials exchange.

Token issuance is serialized per tenant: concurrent callers for the same
tenant block on that tenant's lock and reuse the token the first caller
obtained. Tenants never share tokens or locks.

Usage:
    from services.credential_vault import CredentialVault, TenantCredential

    vault = CredentialVault(
        [TenantCredential('yokohama', client_id, client_secret)],
        client=MedicalForceClient(),
    )
    token = vault.get_token('yokohama')
    ...
    vault.invalidate('yokohama')  # after a 401
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from services.medical_force_client import AuthError, MedicalForceClient

logger = logging.getLogger(__name__)

# Tokens are refreshed this long before the server-side expiry
SAFETY_MARGIN = timedelta(minutes=5)


def _utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def mask_secret(value: Optional[str]) -> str:
    """Mask a secret for logging, keeping the last 4 characters."""
    if not value:
        return '<unset>'
    if len(value) <= 4:
        return '****'
    return '****' + value[-4:]


@dataclass(frozen=True)
class TenantCredential:
    """Client credentials for one clinic. Immutable after startup."""
    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)

    def __repr__(self) -> str:
        return (
            f"TenantCredential(tenant_id={self.tenant_id!r}, "
            f"client_id={self.client_id!r}, client_secret={mask_secret(self.client_secret)!r})"
        )


@dataclass(frozen=True)
class AccessToken:
    """Bearer token issued for one tenant."""
    tenant_id: str
    value: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Usable only while now < expires_at - SAFETY_MARGIN."""
        now = now or _utcnow()
        return now < self.expires_at - SAFETY_MARGIN

    def time_until_expiry(self, now: Optional[datetime] = None) -> timedelta:
        """Time remaining until the token stops being usable."""
        now = now or _utcnow()
        return (self.expires_at - SAFETY_MARGIN) - now


class CredentialVault:
    """
    Issues and caches bearer tokens for each configured tenant.

    Example:
        vault = CredentialVault(credentials, client)
        token = vault.get_token('mito')
        client.fetch_daily_accounts(token.value, start, end)
    """

    def __init__(
        self,
        credentials: Iterable[TenantCredential],
        client: MedicalForceClient,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize vault.

        Args:
            credentials: One TenantCredential per tenant
            client: Transport used for token exchange
            clock: Returns the current UTC time (tests inject a fixed clock)
        """
        self._credentials: Dict[str, TenantCredential] = {
            c.tenant_id: c for c in credentials
        }
        self._client = client
        self._clock = clock
        self._tokens: Dict[str, AccessToken] = {}
        self._locks: Dict[str, threading.Lock] = {
            tenant_id: threading.Lock() for tenant_id in self._credentials
        }

    @property
    def tenant_ids(self) -> List[str]:
        return list(self._credentials)

    def has_tenant(self, tenant_id: str) -> bool:
        return tenant_id in self._credentials

    def get_credential(self, tenant_id: str) -> TenantCredential:
        try:
            return self._credentials[tenant_id]
        except KeyError:
            raise AuthError(f"No credentials configured for tenant '{tenant_id}'")

    # =========================================================================
    # Token Management
    # =========================================================================

    def get_token(self, tenant_id: str) -> AccessToken:
        """
        Get a valid token for a tenant, exchanging credentials on a miss.

        Raises:
            AuthError: If the tenant is unknown or the exchange fails.
        """
        credential = self.get_credential(tenant_id)

        with self._locks[tenant_id]:
            token = self._tokens.get(tenant_id)
            if token is not None and token.is_valid(self._clock()):
                return token

            logger.info(f"[{tenant_id}] Requesting access token")
            grant = self._client.exchange_token(
                credential.client_id, credential.client_secret
            )
            issued_at = self._clock()
            token = AccessToken(
                tenant_id=tenant_id,
                value=grant.access_token,
                issued_at=issued_at,
                expires_at=issued_at + timedelta(seconds=grant.expires_in),
            )
            self._tokens[tenant_id] = token
            logger.info(
                f"[{tenant_id}] Token issued, usable for "
                f"{token.time_until_expiry(issued_at)}"
            )
            return token

    def invalidate(self, tenant_id: str) -> None:
        """Drop the cached token so the next get_token() re-issues."""
        lock = self._locks.get(tenant_id)
        if lock is None:
            return
        with lock:
            if self._tokens.pop(tenant_id, None) is not None:
                logger.info(f"[{tenant_id}] Token invalidated")

    def put_token(self, token: AccessToken) -> None:
        """Seed a token (used when restoring state and in tests)."""
        self.get_credential(token.tenant_id)
        with self._locks[token.tenant_id]:
            self._tokens[token.tenant_id] = token

    # =========================================================================
    # Monitoring
    # =========================================================================

    def token_status(self, tenant_id: str) -> Dict[str, Any]:
        """
        Get token status for one tenant.

        Returns:
            Dict with has_token, is_valid, expires_at, time_until_expiry.
        """
        self.get_credential(tenant_id)
        token = self._tokens.get(tenant_id)
        if token is None:
            return {
                "tenant_id": tenant_id,
                "has_token": False,
                "is_valid": False,
                "expires_at": None,
                "time_until_expiry": None,
            }

        now = self._clock()
        return {
            "tenant_id": tenant_id,
            "has_token": True,
            "is_valid": token.is_valid(now),
            "issued_at": token.issued_at.isoformat(),
            "expires_at": token.expires_at.isoformat(),
            "time_until_expiry": str(token.time_until_expiry(now)),
        }

    def all_token_status(self) -> List[Dict[str, Any]]:
        return [self.token_status(t) for t in self._credentials]
