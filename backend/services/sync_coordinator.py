"""
Sync Coordinator - Owns the merged dataset and the sync state machine

States:
    DISCONNECTED -> BOOTSTRAPPING -> READY <-> REFRESHING_RECENT
    BOOTSTRAPPING -> FAILED (no tenant reachable)

Workflow:
1. connect(): load the trailing history window for every tenant, merge the
   results, enter READY, then run one recent-window refresh immediately
2. refresh_now(): re-fetch the recent window per tenant and merge it in
3. start_background_refresh(): repeat refresh_now() every refresh interval
4. get_snapshot(): derive metrics for a (clinic, date range) selection

Consistency:
- The merged dataset is an immutable tuple swapped under a lock; readers
  never see a partial merge
- Loads and merges for one tenant are serialized by that tenant's lock, so a
  recent-window merge always lands after a running history load
- A tenant whose auth fails keeps whatever data it had and is flagged as
  degraded; only a bootstrap that reaches no tenant at all is FAILED

Usage:
    from services.sync_coordinator import build_coordinator_from_env

    coordinator = build_coordinator_from_env()
    coordinator.connect(progress=lambda i, n, t: print(f"{i}/{n} {t}"))
    snapshot = coordinator.get_snapshot('yokohama', DateRange(start, end))
"""

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from constants import ALL_TENANTS, is_valid_tenant_selection
from services.aggregation import DateRange, MetricSnapshot, build_snapshot
from services.cache_store import CacheStore, create_cache_backend
from services.credential_vault import CredentialVault
from services.daily_account_mapper import DailyAccountRecord
from services.fetch_orchestrator import FetchOrchestrator, LoadResult
from services.medical_force_client import MedicalForceClient
from services.record_merger import merge_records
from services.request_pacer import RequestPacer
from services import sync_config

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

SNAPSHOT_MEMO_SIZE = 64


def _utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base exception for coordinator errors."""
    pass


class SyncDisabledError(SyncError):
    """Sync requested while MF_SYNC_ENABLED is off."""
    pass


class BootstrapError(SyncError):
    """Bootstrap could not reach the API for any tenant."""
    pass


class SyncStateError(SyncError):
    """Operation not allowed in the current state."""
    pass


class UnknownTenantError(ValueError):
    """Tenant or clinic selection that is not configured."""
    pass


# =============================================================================
# Result Types
# =============================================================================

class SyncState(Enum):
    DISCONNECTED = 'disconnected'
    BOOTSTRAPPING = 'bootstrapping'
    READY = 'ready'
    REFRESHING_RECENT = 'refreshing_recent'
    FAILED = 'failed'


@dataclass
class RefreshResult:
    """Outcome of a bootstrap or recent-window refresh across tenants."""
    succeeded: List[str] = field(default_factory=list)
    failed_tenants: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    loads: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    record_count: int = 0
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed_tenants

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SnapshotMemo:
    """Bounded memo of snapshots keyed by dataset version and filter."""

    def __init__(self, maxsize: int = SNAPSHOT_MEMO_SIZE):
        self._entries: "OrderedDict[Tuple, MetricSnapshot]" = OrderedDict()
        self._maxsize = maxsize
        self._lock = threading.Lock()

    def get(self, key: Tuple) -> Optional[MetricSnapshot]:
        with self._lock:
            snapshot = self._entries.get(key)
            if snapshot is not None:
                self._entries.move_to_end(key)
            return snapshot

    def set(self, key: Tuple, snapshot: MetricSnapshot) -> None:
        with self._lock:
            self._entries[key] = snapshot
            self._entries.move_to_end(key)
            while len(self._entries) > self._maxsize:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        return {'size': len(self._entries), 'maxsize': self._maxsize}


# =============================================================================
# Coordinator
# =============================================================================

class SyncCoordinator:
    """
    Top-level control loop. One instance owns all mutable sync state.

    Example:
        coordinator = SyncCoordinator(orchestrator, ['yokohama', 'mito'])
        coordinator.connect()
        result = coordinator.refresh_now()
        print(result.failed_tenants)
    """

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        tenant_ids: List[str],
        history_months: int = 14,
        recent_window_days: int = 1,
        refresh_interval: timedelta = timedelta(hours=12),
        max_workers: int = 1,
        enabled: bool = True,
        today: Callable[[], date] = date.today,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize coordinator.

        Args:
            orchestrator: Fetch driver (holds vault, client and cache)
            tenant_ids: Tenants to sync, in processing order
            history_months: Bootstrap window length
            recent_window_days: Recent-window refresh length
            refresh_interval: Background refresh period
            max_workers: Tenants loaded concurrently (1 = one at a time)
            enabled: Kill switch state
            today: Returns the current date (tests inject a fixed date)
            clock: Returns the current UTC time
        """
        self.orchestrator = orchestrator
        self.tenant_ids = list(tenant_ids)
        self.history_months = history_months
        self.recent_window_days = recent_window_days
        self.refresh_interval = refresh_interval
        self.max_workers = max(1, max_workers)
        self.enabled = enabled
        self._today = today
        self._clock = clock

        self._state = SyncState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._data_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._tenant_locks = {t: threading.Lock() for t in self.tenant_ids}
        self._stop = threading.Event()
        self._scheduler: Optional[threading.Thread] = None

        self._dataset: Tuple[DailyAccountRecord, ...] = ()
        self._version = 0
        self._degraded: Dict[str, str] = {}
        self._memo = SnapshotMemo()

        self.last_bootstrap: Optional[RefreshResult] = None
        self.last_refresh: Optional[RefreshResult] = None
        self.last_bootstrap_at: Optional[datetime] = None
        self.last_refresh_at: Optional[datetime] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, state: SyncState) -> None:
        with self._state_lock:
            if self._state != state:
                logger.info(f"Sync state: {self._state.value} -> {state.value}")
            self._state = state

    def today(self) -> date:
        return self._today()

    @property
    def dataset(self) -> Tuple[DailyAccountRecord, ...]:
        """Current merged dataset (immutable snapshot)."""
        return self._dataset

    @property
    def version(self) -> int:
        return self._version

    @property
    def degraded_tenants(self) -> Dict[str, str]:
        return dict(self._degraded)

    def _check_enabled(self) -> None:
        if not self.enabled:
            raise SyncDisabledError("Sync disabled via MF_SYNC_ENABLED")

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id not in self.tenant_ids:
            raise UnknownTenantError(
                f"Unknown tenant '{tenant_id}'. Configured: {', '.join(self.tenant_ids)}"
            )

    # =========================================================================
    # Dataset
    # =========================================================================

    def _apply(self, records: List[DailyAccountRecord]) -> None:
        """Merge records into the dataset and publish the new version."""
        if not records:
            return
        with self._data_lock:
            merged = tuple(merge_records(self._dataset, records))
            self._dataset = merged
            self._version += 1
        self._memo.clear()

    def tenant_record_counts(self) -> Dict[str, int]:
        counts = {t: 0 for t in self.tenant_ids}
        for record in self._dataset:
            counts[record.tenant_id] = counts.get(record.tenant_id, 0) + 1
        return counts

    # =========================================================================
    # Per-tenant execution
    # =========================================================================

    def _load_tenant(self, tenant_id: str,
                     loader: Callable[[str], LoadResult]) -> Tuple[Optional[LoadResult], Optional[str]]:
        """Load + merge one tenant under its lock. Returns (result, unexpected_error)."""
        with self._tenant_locks[tenant_id]:
            try:
                result = loader(tenant_id)
            except Exception as e:
                logger.exception(f"[{tenant_id}] Load failed unexpectedly: {e}")
                return None, str(e)
            self._apply(result.records)

        if result.auth_error:
            self._degraded[tenant_id] = result.auth_error
            logger.warning(f"[{tenant_id}] Tenant degraded: {result.auth_error}")
        elif result.reached_api:
            self._degraded.pop(tenant_id, None)
        return result, None

    def _run_tenants(self, tenant_ids: List[str], loader: Callable[[str], LoadResult],
                     progress: Optional[ProgressCallback] = None) -> RefreshResult:
        start_time = time.time()
        outcome = RefreshResult()
        total = len(tenant_ids)

        def record(index: int, tenant_id: str, result: Optional[LoadResult], error: Optional[str]):
            if result is not None:
                outcome.loads[tenant_id] = result.to_dict()
                if result.success:
                    outcome.succeeded.append(tenant_id)
                else:
                    outcome.failed_tenants.append(tenant_id)
                    outcome.errors[tenant_id] = result.auth_error or (
                        f"failed months: {', '.join(result.failed_months)}"
                    )
            else:
                outcome.failed_tenants.append(tenant_id)
                outcome.errors[tenant_id] = error or "unknown error"
            if progress is not None:
                progress(index, total, tenant_id)

        if self.max_workers == 1 or total <= 1:
            for i, tenant_id in enumerate(tenant_ids):
                result, error = self._load_tenant(tenant_id, loader)
                record(i + 1, tenant_id, result, error)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {
                    pool.submit(self._load_tenant, tenant_id, loader): tenant_id
                    for tenant_id in tenant_ids
                }
                for done, future in enumerate(as_completed(futures), start=1):
                    result, error = future.result()
                    record(done, futures[future], result, error)

        outcome.record_count = len(self._dataset)
        outcome.duration_seconds = round(time.time() - start_time, 3)
        return outcome

    # =========================================================================
    # Public API
    # =========================================================================

    def history_window(self) -> Tuple[date, date]:
        """First day of the month history_months ago, through today."""
        today = self._today()
        start = (today - relativedelta(months=self.history_months)).replace(day=1)
        return start, today

    def connect(self, progress: Optional[ProgressCallback] = None,
                schedule: bool = False) -> RefreshResult:
        """
        Bootstrap every tenant, enter READY and run a recent-window refresh.

        Args:
            progress: Called as progress(tenant_index, total, tenant_id) after each tenant
            schedule: Also start the background refresh thread

        Returns:
            RefreshResult for the bootstrap.

        Raises:
            SyncDisabledError: Kill switch is off.
            BootstrapError: No tenant could be reached.
        """
        self._check_enabled()
        self._stop.clear()
        from_date, to_date = self.history_window()

        logger.info("=" * 70)
        logger.info("SYNC COORDINATOR - BOOTSTRAP STARTING")
        logger.info("=" * 70)
        logger.info(f"  Tenants:     {', '.join(self.tenant_ids)}")
        logger.info(f"  Window:      {from_date} .. {to_date}")
        logger.info(f"  Workers:     {self.max_workers}")
        logger.info("=" * 70)

        self._set_state(SyncState.BOOTSTRAPPING)

        def loader(tenant_id: str) -> LoadResult:
            return self.orchestrator.load_history(
                tenant_id, from_date, to_date, should_stop=self._stop.is_set
            )

        result = self._run_tenants(self.tenant_ids, loader, progress)
        self.last_bootstrap = result
        self.last_bootstrap_at = self._clock()

        reached = [t for t, load in result.loads.items()
                   if load['succeeded_months'] or load['cached_months']]
        stopped = self._stop.is_set()

        if not reached and not stopped:
            self._set_state(SyncState.FAILED)
            logger.error("=" * 70)
            logger.error("SYNC COORDINATOR - BOOTSTRAP FAILED")
            logger.error("=" * 70)
            for tenant_id, error in result.errors.items():
                logger.error(f"  {tenant_id:<10} {error}")
            logger.error("=" * 70)
            raise BootstrapError(
                "Could not load data for any tenant: "
                + "; ".join(f"{t}: {e}" for t, e in result.errors.items())
            )

        logger.info("=" * 70)
        logger.info("SYNC COORDINATOR - BOOTSTRAP COMPLETED")
        logger.info("=" * 70)
        logger.info(f"  Duration:    {result.duration_seconds:.1f}s")
        logger.info(f"  Records:     {result.record_count}")
        logger.info(f"  Succeeded:   {', '.join(result.succeeded) or '-'}")
        logger.info(f"  Failed:      {', '.join(result.failed_tenants) or '-'}")
        logger.info("=" * 70)

        if stopped:
            self._set_state(SyncState.DISCONNECTED)
            return result

        self._set_state(SyncState.READY)
        self.refresh_now()

        if schedule:
            self.start_background_refresh()
        return result

    def refresh_now(self, tenant_id: Optional[str] = None) -> RefreshResult:
        """
        Re-fetch the recent window and merge it into the dataset.

        Args:
            tenant_id: Refresh one tenant, or all when None

        Returns:
            RefreshResult with succeeded / failed tenants.

        Raises:
            SyncDisabledError: Kill switch is off.
            SyncStateError: Not connected.
            UnknownTenantError: Unknown tenant.
        """
        self._check_enabled()
        if tenant_id is not None and tenant_id != ALL_TENANTS:
            self._check_tenant(tenant_id)
            tenants = [tenant_id]
        else:
            tenants = list(self.tenant_ids)

        with self._refresh_lock:
            if self._state not in (SyncState.READY, SyncState.REFRESHING_RECENT):
                raise SyncStateError(f"Cannot refresh while {self._state.value}")

            self._set_state(SyncState.REFRESHING_RECENT)
            try:
                def loader(t: str) -> LoadResult:
                    return self.orchestrator.load_recent_window(
                        t, self.recent_window_days, should_stop=self._stop.is_set
                    )

                result = self._run_tenants(tenants, loader)
            finally:
                if self._state == SyncState.REFRESHING_RECENT:
                    self._set_state(SyncState.READY)

        self.last_refresh = result
        self.last_refresh_at = self._clock()
        logger.info(
            f"Recent-window refresh: {len(result.succeeded)} ok, "
            f"{len(result.failed_tenants)} failed, {result.record_count} records"
        )
        return result

    def get_snapshot(self, tenant_selection: str = ALL_TENANTS,
                     date_range: Optional[DateRange] = None) -> MetricSnapshot:
        """
        Derive metrics for a clinic selection and date range.

        Recomputed from the current dataset; memoized per dataset version.

        Raises:
            UnknownTenantError: Unknown clinic selection.
        """
        if tenant_selection != ALL_TENANTS and not is_valid_tenant_selection(tenant_selection):
            raise UnknownTenantError(f"Unknown clinic '{tenant_selection}'")

        today = self._today()
        date_range = date_range or DateRange.month_to_date(today)
        key = (self._version, tenant_selection, date_range.start, date_range.end, today)

        snapshot = self._memo.get(key)
        if snapshot is None:
            snapshot = build_snapshot(self._dataset, tenant_selection, date_range, today=today)
            self._memo.set(key, snapshot)
        return snapshot

    def disconnect(self) -> None:
        """
        Stop scheduling new fetches. In-flight requests complete; the
        dataset is kept until the next connect merges over it.
        """
        self._stop.set()
        scheduler = self._scheduler
        if scheduler is not None and scheduler is not threading.current_thread():
            scheduler.join(timeout=5)
        self._scheduler = None
        self._set_state(SyncState.DISCONNECTED)

    # =========================================================================
    # Background refresh
    # =========================================================================

    def start_background_refresh(self) -> threading.Thread:
        """Run refresh_now() every refresh_interval until disconnect()."""
        if self._scheduler is not None and self._scheduler.is_alive():
            return self._scheduler

        interval = self.refresh_interval.total_seconds()

        def _loop():
            logger.info(f"Background refresh every {interval / 3600:.2f}h")
            while not self._stop.wait(interval):
                try:
                    self.refresh_now()
                except SyncError as e:
                    logger.warning(f"Scheduled refresh skipped: {e}")
                except Exception as e:
                    logger.exception(f"Scheduled refresh failed: {e}")
            logger.info("Background refresh stopped")

        thread = threading.Thread(target=_loop, name="mf-recent-refresh", daemon=True)
        self._scheduler = thread
        thread.start()
        return thread

    # =========================================================================
    # Monitoring
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        vault = self.orchestrator.vault
        return {
            'state': self._state.value,
            'enabled': self.enabled,
            'dataset_version': self._version,
            'record_count': len(self._dataset),
            'tenant_record_counts': self.tenant_record_counts(),
            'degraded_tenants': self.degraded_tenants,
            'last_bootstrap_at': self.last_bootstrap_at.isoformat() if self.last_bootstrap_at else None,
            'last_refresh_at': self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            'last_refresh': self.last_refresh.to_dict() if self.last_refresh else None,
            'scheduler_running': bool(self._scheduler and self._scheduler.is_alive()),
            'tokens': [vault.token_status(t) for t in self.tenant_ids if vault.has_tenant(t)],
            'snapshot_memo': self._memo.stats(),
        }


# =============================================================================
# Module-level factory
# =============================================================================

def build_cache_store_from_env() -> CacheStore:
    capacity = sync_config.get_cache_capacity_bytes()
    store = CacheStore(
        create_cache_backend(sync_config.get_cache_url(), capacity),
        capacity_bytes=capacity,
        max_entry_bytes=sync_config.get_cache_max_entry_bytes(),
        ttl=timedelta(hours=sync_config.get_cache_ttl_hours()),
        schema_version=sync_config.get_cache_schema_version(),
    )
    store.purge_other_versions()
    return store


def build_coordinator_from_env() -> SyncCoordinator:
    """
    Wire client, vault, cache, pacer and orchestrator from MF_* settings.

    Raises:
        SyncError: If the configuration is invalid (e.g. no credentials).
    """
    is_valid, error = sync_config.validate_sync_config()
    if not is_valid:
        raise SyncError(error)
    sync_config.log_sync_config()

    credentials = sync_config.load_tenant_credentials()
    client = MedicalForceClient(
        base_url=sync_config.get_api_base_url(),
        timeout=sync_config.get_request_timeout_seconds(),
        audience=sync_config.get_token_audience(),
    )
    vault = CredentialVault(credentials, client)
    orchestrator = FetchOrchestrator(
        vault,
        client,
        build_cache_store_from_env(),
        RequestPacer(delay_override=sync_config.get_request_delay_seconds()),
    )
    return SyncCoordinator(
        orchestrator,
        [c.tenant_id for c in credentials],
        history_months=sync_config.get_history_months(),
        recent_window_days=sync_config.get_recent_window_days(),
        refresh_interval=timedelta(hours=sync_config.get_refresh_interval_hours()),
        max_workers=sync_config.get_fetch_workers(),
        enabled=sync_config.is_sync_enabled(),
    )
