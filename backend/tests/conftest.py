"""
Root pytest configuration for backend tests.

Provides:
- backend/ on sys.path so imports like `from services.cache_store import ...` work
- FakeMedicalForceClient: in-memory transport (no network)
- Fixed clocks and wired vault / cache / pacer / orchestrator / coordinator fixtures
- Shared Flask fixtures (app, client)
"""

import sys
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

# Add backend directory to Python path so imports like
# `from services.sync_coordinator import ...` and `from constants import ...` work
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import pytest

from constants import TENANT_IDS
from services.cache_store import CacheStore, MemoryCacheBackend
from services.credential_vault import CredentialVault, TenantCredential
from services.daily_account_mapper import DailyAccountRecord, PaymentLineItem
from services.fetch_orchestrator import FetchOrchestrator
from services.medical_force_client import AuthError, DailyAccountsPage, TokenGrant
from services.request_pacer import RequestPacer
from services.sync_coordinator import SyncCoordinator


FIXED_TODAY = date(2024, 1, 20)
FIXED_NOW = datetime(2024, 1, 20, 3, 0, tzinfo=timezone.utc)


# =============================================================================
# Test doubles
# =============================================================================

class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMedicalForceClient:
    """
    In-memory stand-in for MedicalForceClient.

    - Tokens are issued as '<client_id>:<n>'; credentials in tests use the
      tenant id as client_id, so a token tells fetches which tenant it is for.
    - Raw values are stored per tenant and filtered by recordDate.
    - fail_month() queues exceptions raised for a (tenant, 'YYYY-MM') fetch.
    """

    def __init__(self):
        self.values = defaultdict(list)
        self.fetch_errors = {}
        self.rejected_clients = set()
        self.expires_in = 86400
        self.token_calls = []
        self.fetch_calls = []
        self._issued = 0
        self._lock = threading.Lock()

    def add_values(self, tenant_id, *raws):
        self.values[tenant_id].extend(raws)

    def set_values(self, tenant_id, raws):
        self.values[tenant_id] = list(raws)

    def fail_month(self, tenant_id, label, *errors):
        self.fetch_errors.setdefault((tenant_id, label), []).extend(errors)

    def exchange_token(self, client_id, client_secret):
        with self._lock:
            self.token_calls.append(client_id)
            self._issued += 1
            issued = self._issued
        if client_id in self.rejected_clients:
            raise AuthError(f"Token exchange rejected: HTTP 401 (client {client_id})")
        return TokenGrant(
            access_token=f"{client_id}:{issued}",
            expires_in=self.expires_in,
            issued_at=FIXED_NOW,
        )

    def fetch_daily_accounts(self, access_token, from_date, to_date):
        tenant_id = access_token.split(':')[0]
        with self._lock:
            self.fetch_calls.append((tenant_id, from_date, to_date))
            queued = self.fetch_errors.get((tenant_id, f"{from_date:%Y-%m}"))
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

        lo, hi = from_date.isoformat(), to_date.isoformat()
        values = [v for v in self.values[tenant_id] if lo <= v['recordDate'][:10] <= hi]
        return DailyAccountsPage(clinic_id=tenant_id, values=values)


def _raw_account(visitor_id, record_date, total=10000, **extra):
    """Minimal daily-accounts `values` entry."""
    raw = {
        'visitorId': visitor_id,
        'recordDate': record_date,
        'totalWithTax': total,
        'isFirst': False,
        'paymentItems': [],
    }
    raw.update(extra)
    return raw


def _make_record(tenant_id, record_date, total=10000.0, visitor=None, items=(), **kwargs):
    """Build a normalized record directly (aggregation / merger tests)."""
    if isinstance(record_date, str):
        record_date = date.fromisoformat(record_date)
    line_items = tuple(
        item if isinstance(item, PaymentLineItem) else PaymentLineItem(**item)
        for item in items
    )
    return DailyAccountRecord(
        tenant_id=tenant_id,
        visitor_identity=visitor or f"V-{tenant_id}-{record_date.isoformat()}",
        record_date=record_date,
        total_amount=float(total),
        line_items=line_items,
        net_total=float(total),
        **kwargs
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeMedicalForceClient()


@pytest.fixture
def credentials():
    return [TenantCredential(t, t, f"secret-{t}-0000") for t in TENANT_IDS]


@pytest.fixture
def vault(credentials, fake_client, clock):
    return CredentialVault(credentials, fake_client, clock=clock)


@pytest.fixture
def cache_store(clock):
    return CacheStore(MemoryCacheBackend(), clock=clock)


@pytest.fixture
def sleeps():
    """Records every pacing / backoff sleep instead of sleeping."""
    return []


@pytest.fixture
def pacer(sleeps):
    return RequestPacer(delay_override=0.2, sleep=sleeps.append)


@pytest.fixture
def orchestrator(vault, fake_client, cache_store, pacer):
    return FetchOrchestrator(vault, fake_client, cache_store, pacer, today=lambda: FIXED_TODAY)


@pytest.fixture
def coordinator(orchestrator, clock):
    return SyncCoordinator(
        orchestrator,
        TENANT_IDS,
        history_months=14,
        recent_window_days=1,
        today=lambda: FIXED_TODAY,
        clock=clock,
    )


@pytest.fixture
def seeded_client(fake_client):
    """Fake client with a little data for every clinic."""
    fake_client.add_values(
        'yokohama',
        _raw_account('Y1', '2024-01-05', 10000, isFirst=True, visitorAge=34, visitorGender='女性'),
        _raw_account('Y2', '2024-01-20', 5000, reservationStaffName='佐藤'),
        _raw_account('Y3', '2023-12-10', 20000),
    )
    fake_client.add_values('koriyama', _raw_account('K1', '2024-01-10', 30000))
    fake_client.add_values('mito', _raw_account('M1', '2023-11-02', 7000))
    fake_client.add_values('omiya', _raw_account('O1', '2024-01-15', 12000))
    return fake_client


@pytest.fixture
def app(coordinator):
    """Create test Flask application serving the injected coordinator."""
    from app import create_app

    app = create_app(coordinator=coordinator)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def raw_account():
    """Factory for raw daily-accounts values."""
    return _raw_account


@pytest.fixture
def make_record():
    """Factory for normalized DailyAccountRecord objects."""
    return _make_record
