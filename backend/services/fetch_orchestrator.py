"""
Fetch Orchestrator - Month-chunked history loads per tenant

Workflow for load_history(tenant, from_date, to_date):
1. Split the range into calendar months, clipped at both ends
2. For each month, in chronological order:
   a. Reuse a fresh cached chunk for completed months (history loads only)
   b. Otherwise pace, get a token, fetch the month, normalize the values
   c. Write the month through to the cache when it covers the whole month
      (or the current month up to today)
3. Return everything fetched, plus per-month success/failure bookkeeping

Failure policy:
- TransientFetchError / FetchError: month is logged and skipped, load continues
- 401: token invalidated and the month retried once; a second 401 is an AuthError
- AuthError: the rest of this tenant's load is abandoned
- Cache write refused (size/quota): records are still returned

Usage:
    from services.fetch_orchestrator import FetchOrchestrator

    orchestrator = FetchOrchestrator(vault, client, cache, pacer)
    result = orchestrator.load_history('yokohama', date(2023, 11, 1), date(2024, 12, 31))
    print(result.to_dict())
"""

import calendar
import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from services.cache_store import CacheStore
from services.credential_vault import CredentialVault
from services.daily_account_mapper import DailyAccountMapper, DailyAccountRecord
from services.medical_force_client import (
    AuthError,
    MedicalForceAPIError,
    MedicalForceClient,
    TransientFetchError,
    UnauthorizedError,
)
from services.request_pacer import RequestPacer

logger = logging.getLogger(__name__)

ROUTE_DAILY_ACCOUNTS = "daily_accounts"


# =============================================================================
# Result Types
# =============================================================================

class MonthRange(NamedTuple):
    year: int
    month: int
    start: date
    end: date

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"

    @property
    def is_full_month(self) -> bool:
        last_day = calendar.monthrange(self.year, self.month)[1]
        return self.start.day == 1 and self.end.day == last_day


@dataclass
class LoadResult:
    """Outcome of one tenant load."""
    tenant_id: str
    records: List[DailyAccountRecord] = field(default_factory=list)
    succeeded_months: List[str] = field(default_factory=list)
    failed_months: List[str] = field(default_factory=list)
    cached_months: List[str] = field(default_factory=list)
    uncached_months: List[str] = field(default_factory=list)
    auth_error: Optional[str] = None
    stopped: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.auth_error is None and not self.failed_months

    @property
    def reached_api(self) -> bool:
        """True if at least one month was fetched or served from cache."""
        return bool(self.succeeded_months or self.cached_months)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'record_count': len(self.records),
            'succeeded_months': list(self.succeeded_months),
            'failed_months': list(self.failed_months),
            'cached_months': list(self.cached_months),
            'uncached_months': list(self.uncached_months),
            'auth_error': self.auth_error,
            'stopped': self.stopped,
            'duration_seconds': self.duration_seconds,
        }


# =============================================================================
# Month Planning
# =============================================================================

def plan_months(from_date: date, to_date: date) -> List[MonthRange]:
    """
    Split [from_date, to_date] into calendar-month sub-ranges.

    The first and last sub-ranges are clipped at the requested boundary.

    Examples:
        >>> [m.label for m in plan_months(date(2024, 1, 15), date(2024, 3, 10))]
        ['2024-01', '2024-02', '2024-03']
    """
    if from_date > to_date:
        return []

    months = []
    year, month = from_date.year, from_date.month
    while (year, month) <= (to_date.year, to_date.month):
        last_day = calendar.monthrange(year, month)[1]
        start = max(date(year, month, 1), from_date)
        end = min(date(year, month, last_day), to_date)
        months.append(MonthRange(year, month, start, end))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


# =============================================================================
# Orchestrator
# =============================================================================

class FetchOrchestrator:
    """
    Drives CredentialVault + MedicalForceClient + CacheStore for one tenant
    at a time. Separate tenants may be loaded from separate threads.
    """

    def __init__(
        self,
        vault: CredentialVault,
        client: MedicalForceClient,
        cache: CacheStore,
        pacer: Optional[RequestPacer] = None,
        today: Callable[[], date] = date.today,
    ):
        self.vault = vault
        self.client = client
        self.cache = cache
        self.pacer = pacer or RequestPacer()
        self._today = today

    # =========================================================================
    # Public API
    # =========================================================================

    def load_history(
        self,
        tenant_id: str,
        from_date: date,
        to_date: date,
        use_cache: bool = True,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> LoadResult:
        """
        Load a tenant's records for [from_date, to_date].

        Args:
            tenant_id: Tenant to load
            from_date: First day (inclusive)
            to_date: Last day (inclusive)
            use_cache: Serve fresh cached chunks for completed months
            should_stop: Checked before each month; True stops scheduling
                         further months (the in-flight month completes)

        Returns:
            LoadResult with records from every month that succeeded.
        """
        start_time = time.time()
        today = self._today()
        result = LoadResult(tenant_id=tenant_id)
        months = plan_months(from_date, to_date)

        logger.info(
            f"[{tenant_id}] Loading {from_date} .. {to_date} ({len(months)} months)"
        )
        self.pacer.reset(tenant_id)

        for month in months:
            if should_stop is not None and should_stop():
                logger.info(f"[{tenant_id}] Stop requested, not scheduling {month.label}")
                result.stopped = True
                break

            if use_cache and self._serve_from_cache(tenant_id, month, today, result):
                continue

            self.pacer.wait(ROUTE_DAILY_ACCOUNTS, tenant_id)

            try:
                records = self._fetch_month(tenant_id, month)
            except AuthError as e:
                logger.error(f"[{tenant_id}] Auth failed at {month.label}: {e}")
                result.auth_error = str(e)
                result.failed_months.append(month.label)
                break
            except TransientFetchError as e:
                logger.warning(f"[{tenant_id}] {month.label} skipped (transient): {e}")
                result.failed_months.append(month.label)
                continue
            except MedicalForceAPIError as e:
                logger.warning(f"[{tenant_id}] {month.label} skipped: {e}")
                result.failed_months.append(month.label)
                continue

            result.succeeded_months.append(month.label)
            result.records.extend(records)

            if self._is_cacheable(month, today):
                if not self.cache.put(tenant_id, month.year, month.month, records):
                    result.uncached_months.append(month.label)

        result.duration_seconds = round(time.time() - start_time, 3)
        logger.info(
            f"[{tenant_id}] Load finished: {len(result.records)} records, "
            f"{len(result.succeeded_months)} fetched, {len(result.cached_months)} from cache, "
            f"{len(result.failed_months)} failed, {result.duration_seconds:.1f}s"
        )
        return result

    def load_recent_window(
        self,
        tenant_id: str,
        window_days: int,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> LoadResult:
        """
        Re-fetch [today - window_days, today], bypassing the cache.

        Picks up late postings without re-downloading the full history.
        """
        today = self._today()
        return self.load_history(
            tenant_id,
            today - timedelta(days=window_days),
            today,
            use_cache=False,
            should_stop=should_stop,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _serve_from_cache(self, tenant_id: str, month: MonthRange, today: date,
                          result: LoadResult) -> bool:
        if not month.is_full_month:
            return False
        chunk = self.cache.get(tenant_id, month.year, month.month)
        if chunk is None or not self.cache.is_reusable(chunk, today):
            return False
        result.cached_months.append(month.label)
        result.records.extend(chunk.records)
        return True

    @staticmethod
    def _is_cacheable(month: MonthRange, today: date) -> bool:
        """
        Only whole months are cached, plus the current month when fetched
        from its first day. A partial range must never overwrite a fuller chunk.
        """
        if month.is_full_month:
            return True
        is_current = (month.year, month.month) == (today.year, today.month)
        return is_current and month.start.day == 1 and month.end >= today

    def _fetch_month(self, tenant_id: str, month: MonthRange) -> List[DailyAccountRecord]:
        """
        Fetch and normalize one month.

        A 401 invalidates the token and retries exactly once.

        Raises:
            AuthError: Token exchange failed or the retry was also rejected.
            TransientFetchError / FetchError: Passed through.
        """
        token = self.vault.get_token(tenant_id)
        try:
            page = self.client.fetch_daily_accounts(token.value, month.start, month.end)
        except UnauthorizedError:
            logger.warning(f"[{tenant_id}] Got 401 for {month.label}, refreshing token and retrying")
            self.vault.invalidate(tenant_id)
            token = self.vault.get_token(tenant_id)
            try:
                page = self.client.fetch_daily_accounts(token.value, month.start, month.end)
            except UnauthorizedError:
                raise AuthError(
                    f"Daily-accounts request for {month.label} rejected after token refresh"
                )

        mapper = DailyAccountMapper()
        records = mapper.map_values(page.values, tenant_id)
        logger.info(f"[{tenant_id}] Fetched {month.label}: {len(records)} records")
        return records
