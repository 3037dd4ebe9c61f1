"""
Sync Configuration - Environment-based settings and kill switch

Environment Variables:
    MF_SYNC_ENABLED: 'true' or 'false' (default: 'true')
        Kill switch. When off, connect/refresh raise SyncDisabledError.

    MF_API_BASE_URL: API root (default: https://api.medical-force.com/)
    MF_TOKEN_AUDIENCE: OAuth audience (default: mf-developer-api/api.edit)

    MF_CLIENT_ID_<TENANT> / MF_CLIENT_SECRET_<TENANT>:
        Client credentials per clinic, e.g. MF_CLIENT_ID_YOKOHAMA.
        Tenants without both values are skipped.

    MF_HISTORY_MONTHS: int (default: 14)
    MF_RECENT_WINDOW_DAYS: int (default: 1)
    MF_REFRESH_INTERVAL_HOURS: float (default: 12)
    MF_REQUEST_TIMEOUT_SECONDS: float (default: 120)
    MF_REQUEST_DELAY_SECONDS: float (default: unset, YAML pacing config applies)
    MF_FETCH_WORKERS: int (default: 1, tenants loaded one at a time)

    MF_CACHE_URL: 'memory://' or a SQLAlchemy URL (default: sqlite:///mf_cache.db)
    MF_CACHE_CAPACITY_BYTES: int (default: 5 MiB)
    MF_CACHE_MAX_ENTRY_BYTES: int (default: 512 KiB)
    MF_CACHE_TTL_HOURS: float (default: 24)
    MF_CACHE_SCHEMA_VERSION: str (default: 'v4')
"""

import os
import logging
from typing import List, Optional, Tuple

from constants import TENANT_IDS
from services.credential_vault import TenantCredential, mask_secret

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================

def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} '{raw}', defaulting to {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} below minimum {minimum}, defaulting to {default}")
        return default
    return value


def _get_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} '{raw}', defaulting to {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} below minimum {minimum}, defaulting to {default}")
        return default
    return value


# =============================================================================
# Kill Switch
# =============================================================================

def is_sync_enabled() -> bool:
    """
    Check if sync is enabled.

    Environment:
        MF_SYNC_ENABLED: 'true' (default) or 'false'
    """
    enabled = os.environ.get('MF_SYNC_ENABLED', 'true').lower()
    if enabled in ('false', '0', 'no', 'off', 'disabled'):
        logger.warning("Sync is DISABLED via MF_SYNC_ENABLED=false")
        return False
    return True


# =============================================================================
# Settings
# =============================================================================

def get_api_base_url() -> str:
    return os.environ.get('MF_API_BASE_URL', 'https://api.medical-force.com/')


def get_token_audience() -> str:
    return os.environ.get('MF_TOKEN_AUDIENCE', 'mf-developer-api/api.edit')


def get_history_months() -> int:
    return _get_int('MF_HISTORY_MONTHS', 14, minimum=1)


def get_recent_window_days() -> int:
    return _get_int('MF_RECENT_WINDOW_DAYS', 1, minimum=0)


def get_refresh_interval_hours() -> float:
    return _get_float('MF_REFRESH_INTERVAL_HOURS', 12.0, minimum=0.01)


def get_request_timeout_seconds() -> float:
    return _get_float('MF_REQUEST_TIMEOUT_SECONDS', 120.0, minimum=1.0)


def get_request_delay_seconds() -> Optional[float]:
    """Explicit pacing override, or None to use request_pacing.yaml."""
    if not os.environ.get('MF_REQUEST_DELAY_SECONDS'):
        return None
    return _get_float('MF_REQUEST_DELAY_SECONDS', 0.2)


def get_fetch_workers() -> int:
    return _get_int('MF_FETCH_WORKERS', 1, minimum=1)


def get_cache_url() -> str:
    return os.environ.get('MF_CACHE_URL', 'sqlite:///mf_cache.db')


def get_cache_capacity_bytes() -> int:
    return _get_int('MF_CACHE_CAPACITY_BYTES', 5 * 1024 * 1024, minimum=1)


def get_cache_max_entry_bytes() -> int:
    return _get_int('MF_CACHE_MAX_ENTRY_BYTES', 512 * 1024, minimum=1)


def get_cache_ttl_hours() -> float:
    return _get_float('MF_CACHE_TTL_HOURS', 24.0, minimum=0.0)


def get_cache_schema_version() -> str:
    return os.environ.get('MF_CACHE_SCHEMA_VERSION', 'v4')


# =============================================================================
# Credentials
# =============================================================================

def load_tenant_credentials(tenant_ids: Optional[List[str]] = None) -> List[TenantCredential]:
    """
    Read MF_CLIENT_ID_<TENANT> / MF_CLIENT_SECRET_<TENANT> for each tenant.

    Tenants missing either value are skipped with a warning.

    Returns:
        Credentials in tenant order
    """
    credentials = []
    for tenant_id in tenant_ids or TENANT_IDS:
        suffix = tenant_id.upper()
        client_id = os.environ.get(f'MF_CLIENT_ID_{suffix}', '').strip()
        client_secret = os.environ.get(f'MF_CLIENT_SECRET_{suffix}', '').strip()
        if not client_id or not client_secret:
            logger.warning(
                f"[{tenant_id}] Credentials not configured "
                f"(MF_CLIENT_ID_{suffix} / MF_CLIENT_SECRET_{suffix}), skipping tenant"
            )
            continue
        credentials.append(TenantCredential(tenant_id, client_id, client_secret))
    return credentials


# =============================================================================
# Validation
# =============================================================================

def validate_sync_config() -> Tuple[bool, Optional[str]]:
    """
    Validate sync configuration before starting.

    Returns:
        (is_valid, error_message)
    """
    if not is_sync_enabled():
        return False, "Sync disabled via MF_SYNC_ENABLED"

    if not load_tenant_credentials():
        return False, (
            "No tenant credentials configured. Set MF_CLIENT_ID_<TENANT> and "
            "MF_CLIENT_SECRET_<TENANT> for at least one of: "
            + ", ".join(t.upper() for t in TENANT_IDS)
        )

    return True, None


def log_sync_config():
    """Log current sync configuration (secrets masked)."""
    credentials = load_tenant_credentials()

    logger.info("=" * 60)
    logger.info("Medical Force Sync Configuration")
    logger.info("=" * 60)
    logger.info(f"  Enabled:          {is_sync_enabled()}")
    logger.info(f"  API base URL:     {get_api_base_url()}")
    logger.info(f"  History window:   {get_history_months()} months")
    logger.info(f"  Recent window:    {get_recent_window_days()} days")
    logger.info(f"  Refresh interval: {get_refresh_interval_hours()} hours")
    logger.info(f"  Request timeout:  {get_request_timeout_seconds()}s")
    logger.info(f"  Fetch workers:    {get_fetch_workers()}")
    logger.info(f"  Cache URL:        {get_cache_url()}")
    logger.info(f"  Cache capacity:   {get_cache_capacity_bytes()} bytes")
    logger.info(f"  Cache TTL:        {get_cache_ttl_hours()} hours")
    logger.info(f"  Schema version:   {get_cache_schema_version()}")
    for cred in credentials:
        logger.info(
            f"  Tenant {cred.tenant_id:<10} client_id={cred.client_id} "
            f"secret={mask_secret(cred.client_secret)}"
        )
    logger.info("=" * 60)
