"""
Medical Force API Client - Token exchange and daily-account fetching

Authentication:
- One OAuth client (client_id / client_secret) per clinic
- Token obtained via POST /token with grant_type=client_credentials
- expires_in defaults to 86400 seconds when the server omits it

Endpoints:
- Token: POST /token
- Daily accounts: GET /developer/daily-accounts?epoch_from=YYYY-MM-DD&epoch_to=YYYY-MM-DD

Status handling for daily accounts:
- 401: UnauthorizedError (caller invalidates the token and retries once)
- 429/502/503/504, timeouts, connection errors: TransientFetchError
- any other non-2xx or malformed body: FetchError

The client is stateless with respect to tokens; caching and expiry live in
services.credential_vault.

Usage:
    from services.medical_force_client import MedicalForceClient

    with MedicalForceClient() as client:
        grant = client.exchange_token(client_id, client_secret)
        page = client.fetch_daily_accounts(grant.access_token, date(2024, 1, 1), date(2024, 1, 31))
        for value in page.values:
            print(value['visitorId'], value['totalWithTax'])
"""

import time
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_BASE_URL = "https://api.medical-force.com/"
DEFAULT_AUDIENCE = "mf-developer-api/api.edit"
TOKEN_PATH = "token"
DAILY_ACCOUNTS_PATH = "developer/daily-accounts"

DEFAULT_EXPIRES_IN_SECONDS = 86400
DEFAULT_TIMEOUT_SECONDS = 120
TOKEN_TIMEOUT_SECONDS = 30

# Retry configuration (token exchange only)
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
BACKOFF_MULTIPLIER = 2.0

TRANSIENT_STATUS_CODES = frozenset([429, 502, 503, 504])


def _utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


# =============================================================================
# Exceptions
# =============================================================================

class MedicalForceAPIError(Exception):
    """Base exception for Medical Force API errors."""
    pass


class AuthError(MedicalForceAPIError):
    """Token exchange failed, or a fetch was rejected after a token refresh."""
    pass


class UnauthorizedError(MedicalForceAPIError):
    """A single 401 from a data endpoint."""
    pass


class FetchError(MedicalForceAPIError):
    """Non-transient data fetch failure (unexpected status or body)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeout, connection failure or gateway error; retried on the next pass."""
    pass


# =============================================================================
# Response Models
# =============================================================================

class TokenResponse(BaseModel):
    """Token endpoint body."""
    model_config = ConfigDict(extra='ignore')

    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN_SECONDS
    token_type: Optional[str] = None

    @field_validator('access_token', mode='before')
    @classmethod
    def strip_token(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("empty access_token")
        return v

    @field_validator('expires_in', mode='before')
    @classmethod
    def default_expiry(cls, v):
        if v is None or v == '':
            return DEFAULT_EXPIRES_IN_SECONDS
        return v


class DailyAccountsPage(BaseModel):
    """Daily-accounts endpoint body. `values` stays raw for the mapper."""
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    clinic_id: Optional[str] = None
    total: Optional[float] = None
    net_total: Optional[float] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    values: List[Any] = []

    @field_validator('values', mode='before')
    @classmethod
    def null_values_as_empty(cls, v):
        return v or []

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'DailyAccountsPage':
        return cls(
            clinic_id=payload.get('clinicId'),
            total=payload.get('total'),
            net_total=payload.get('netTotal'),
            start_at=payload.get('startAt'),
            end_at=payload.get('endAt'),
            values=payload.get('values'),
        )


class TokenGrant(BaseModel):
    """A freshly issued token plus the time it was issued."""
    model_config = ConfigDict(frozen=True)

    access_token: str
    expires_in: int
    issued_at: datetime


# =============================================================================
# Client
# =============================================================================

class MedicalForceClient:
    """
    HTTP transport for the Medical Force developer API.

    Features:
    - Client-credentials token exchange with retry + exponential backoff
    - Daily-account fetch with status classification (401 / transient / fatal)
    - Bounded request timeout
    - Shared requests.Session

    Example:
        client = MedicalForceClient(timeout=120)
        grant = client.exchange_token(client_id, client_secret)
        page = client.fetch_daily_accounts(grant.access_token, start, end)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        audience: str = DEFAULT_AUDIENCE,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize client.

        Args:
            base_url: API root, with or without trailing slash
            timeout: Per-request timeout in seconds for data fetches
            audience: OAuth audience sent with token requests
            session: Optional pre-built session (tests inject a mock)
            sleep: Backoff sleep function
        """
        self.base_url = base_url if base_url.endswith('/') else base_url + '/'
        self.timeout = timeout
        self.audience = audience
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": "ClinicDashboard/1.0 (analytics sync)",
            "accept": "application/json",
        })

    # =========================================================================
    # Token Exchange
    # =========================================================================

    def exchange_token(self, client_id: str, client_secret: str) -> TokenGrant:
        """
        Exchange client credentials for a bearer token.

        Connection errors and timeouts are retried with exponential backoff.
        HTTP rejections are not retried.

        Returns:
            TokenGrant with the stripped token and server expiry.

        Raises:
            AuthError: If the exchange is rejected or keeps failing.
        """
        body = {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
            "audience": self.audience,
        }

        for attempt in range(MAX_RETRIES):
            try:
                response = self._session.post(
                    self.base_url + TOKEN_PATH,
                    json=body,
                    timeout=TOKEN_TIMEOUT_SECONDS,
                )
            except requests.exceptions.RequestException as e:
                backoff = INITIAL_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER ** attempt)
                logger.warning(
                    f"Token exchange attempt {attempt + 1}/{MAX_RETRIES} failed: {e}. "
                    f"Retrying in {backoff}s"
                )
                if attempt < MAX_RETRIES - 1:
                    self._sleep(backoff)
                    continue
                raise AuthError(f"Token exchange failed after {MAX_RETRIES} attempts: {e}")

            if not _is_success(response.status_code):
                raise AuthError(
                    f"Token exchange rejected: HTTP {response.status_code} "
                    f"{_short_body(response)}"
                )

            try:
                parsed = TokenResponse.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                raise AuthError(f"Unexpected token response: {e}")

            return TokenGrant(
                access_token=parsed.access_token,
                expires_in=parsed.expires_in,
                issued_at=_utcnow(),
            )

        # Should not reach here
        raise AuthError("Token exchange failed")

    # =========================================================================
    # Data Fetching
    # =========================================================================

    def fetch_daily_accounts(
        self,
        access_token: str,
        from_date: date,
        to_date: date
    ) -> DailyAccountsPage:
        """
        Fetch daily accounts for an inclusive date range.

        Raises:
            UnauthorizedError: On HTTP 401.
            TransientFetchError: On timeout, connection error, 429/502/503/504.
            FetchError: On any other failure.
        """
        params = {
            "epoch_from": from_date.isoformat(),
            "epoch_to": to_date.isoformat(),
        }
        start_time = time.time()

        try:
            response = self._session.get(
                self.base_url + DAILY_ACCOUNTS_PATH,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientFetchError(f"Request timed out after {self.timeout}s: {e}")
        except requests.exceptions.ConnectionError as e:
            raise TransientFetchError(f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Request failed: {e}")

        status = response.status_code
        if status == 401:
            raise UnauthorizedError("Daily-accounts request rejected with 401")
        if status in TRANSIENT_STATUS_CODES:
            raise TransientFetchError(
                f"Upstream returned HTTP {status}", status_code=status
            )
        if not _is_success(status):
            raise FetchError(
                f"Upstream returned HTTP {status}: {_short_body(response)}",
                status_code=status,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON body: {e}", status_code=status)
        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected body type {type(payload).__name__}", status_code=status)

        try:
            page = DailyAccountsPage.from_payload(payload)
        except ValidationError as e:
            raise FetchError(f"Malformed daily-accounts body: {e}", status_code=status)

        duration = time.time() - start_time
        logger.debug(
            f"Daily accounts {params['epoch_from']}..{params['epoch_to']}: "
            f"{len(page.values)} values, {duration:.2f}s"
        )
        return page

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def health_check(self, credentials: Iterable[Any], day: Optional[date] = None) -> Dict[str, Any]:
        """
        Exchange a token and fetch one day of data for each tenant.

        Args:
            credentials: TenantCredential-like objects (tenant_id, client_id, client_secret)
            day: Day to fetch (defaults to today)

        Returns:
            Dict with overall status and per-tenant results.
        """
        day = day or date.today()
        tenants = {}

        for cred in credentials:
            entry = {"token_ok": False, "data_ok": False, "error": None}
            try:
                grant = self.exchange_token(cred.client_id, cred.client_secret)
                entry["token_ok"] = True
                page = self.fetch_daily_accounts(grant.access_token, day, day)
                entry["data_ok"] = True
                entry["sample_values"] = len(page.values)
            except MedicalForceAPIError as e:
                entry["error"] = str(e)
            tenants[cred.tenant_id] = entry

        healthy = [t for t in tenants.values() if t["token_ok"] and t["data_ok"]]
        if tenants and len(healthy) == len(tenants):
            status = "healthy"
        elif healthy:
            status = "degraded"
        else:
            status = "unhealthy"

        return {"status": status, "tenants": tenants}

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _short_body(response: requests.Response, limit: int = 200) -> str:
    try:
        return (response.text or '')[:limit]
    except Exception:
        return ''


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300
