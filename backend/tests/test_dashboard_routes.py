"""
Tests for Dashboard API Routes

Covers query/body validation, the JSON error envelope, state-dependent
status codes and the health endpoint.
"""

from app import create_app


class TestHealth:

    def test_health(self, client):
        response = client.get('/api/health')

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'ok'
        assert data['sync_state'] == 'disconnected'
        assert data['record_count'] == 0

    def test_not_configured(self):
        app = create_app()
        app.config['TESTING'] = True

        data = app.test_client().get('/api/health').get_json()

        assert data['sync_state'] == 'not_configured'


class TestSnapshot:

    def test_snapshot_with_params(self, client, coordinator, seeded_client):
        coordinator.connect()

        response = client.get('/api/dashboard/snapshot?clinic=yokohama&start=2023-12-01&end=2024-01-20')

        assert response.status_code == 200
        body = response.get_json()
        assert body['data']['tenant_selection'] == 'yokohama'
        assert body['data']['record_count'] == 3
        assert body['data']['date_range'] == {'start': '2023-12-01', 'end': '2024-01-20'}
        assert body['meta']['state'] == 'ready'
        assert body['meta']['degraded_tenants'] == {}

    def test_default_range_is_month_to_date(self, client):
        body = client.get('/api/dashboard/snapshot').get_json()

        assert body['data']['tenant_selection'] == 'all'
        assert body['data']['date_range'] == {'start': '2024-01-01', 'end': '2024-01-20'}
        assert len(body['data']['daily_trend']) == 30

    def test_clinic_is_case_insensitive(self, client):
        body = client.get('/api/dashboard/snapshot?clinic=%20Mito%20').get_json()
        assert body['data']['tenant_selection'] == 'mito'

    def test_unknown_clinic(self, client):
        response = client.get('/api/dashboard/snapshot?clinic=nagoya', headers={'X-Request-ID': 'req-123'})

        assert response.status_code == 400
        error = response.get_json()['error']
        assert error['code'] == 'VALIDATION_ERROR'
        assert 'nagoya' in error['message']
        assert error['requestId'] == 'req-123'
        assert response.headers['X-Request-ID'] == 'req-123'

    def test_start_after_end(self, client):
        response = client.get('/api/dashboard/snapshot?start=2024-02-01&end=2024-01-01')

        assert response.status_code == 400
        assert 'start must be on or before end' in response.get_json()['error']['message']

    def test_end_only_in_a_past_month(self, client, coordinator, seeded_client):
        coordinator.connect()

        response = client.get('/api/dashboard/snapshot?clinic=all&end=2023-12-31')

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['date_range'] == {'start': '2023-12-01', 'end': '2023-12-31'}
        assert data['record_count'] == 1

    def test_bad_date(self, client):
        response = client.get('/api/dashboard/snapshot?start=01/02/2024')

        assert response.status_code == 400
        assert response.get_json()['error']['message'].startswith('start:')


class TestRefresh:

    def test_refresh_one_clinic(self, client, coordinator, seeded_client):
        coordinator.connect()

        response = client.post('/api/dashboard/refresh', json={'clinic': 'mito'})

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['succeeded'] == ['mito']
        assert data['failed_tenants'] == []

    def test_refresh_all_without_body(self, client, coordinator, seeded_client):
        coordinator.connect()
        data = client.post('/api/dashboard/refresh').get_json()['data']
        assert data['succeeded'] == ['yokohama', 'koriyama', 'mito', 'omiya']

    def test_refresh_before_connect(self, client):
        response = client.post('/api/dashboard/refresh', json={})

        assert response.status_code == 409
        assert response.get_json()['error']['code'] == 'SYNC_NOT_READY'

    def test_refresh_disabled(self, client, coordinator):
        coordinator.enabled = False

        response = client.post('/api/dashboard/refresh')

        assert response.status_code == 503
        assert response.get_json()['error']['code'] == 'SYNC_DISABLED'

    def test_refresh_unknown_clinic(self, client):
        response = client.post('/api/dashboard/refresh', json={'clinic': 'nagoya'})
        assert response.status_code == 400


class TestConnectAndStatus:

    def test_connect_when_ready_is_noop(self, client, coordinator, seeded_client):
        coordinator.connect()
        version = coordinator.version

        response = client.post('/api/dashboard/connect')

        assert response.status_code == 200
        assert response.get_json()['data']['state'] == 'ready'
        assert coordinator.version == version

    def test_connect_starts_in_background(self, client, coordinator):
        coordinator.enabled = False

        response = client.post('/api/dashboard/connect')

        assert response.status_code == 202

    def test_status(self, client, coordinator, seeded_client):
        coordinator.connect()

        data = client.get('/api/dashboard/status').get_json()['data']

        assert data['state'] == 'ready'
        assert data['record_count'] == 6
        assert 'tokens' in data


class TestErrorEnvelope:

    def test_internal_value_error_is_500(self, client, coordinator, monkeypatch):
        def broken(*args, **kwargs):
            raise ValueError("bad arithmetic")
        monkeypatch.setattr(coordinator, 'get_snapshot', broken)

        response = client.get('/api/dashboard/snapshot')

        assert response.status_code == 500
        assert response.get_json()['error']['code'] == 'INTERNAL_ERROR'

    def test_unconfigured_tenant_is_400(self, client, coordinator, monkeypatch):
        monkeypatch.setattr(coordinator, 'tenant_ids', ['yokohama'])

        response = client.post('/api/dashboard/refresh', json={'clinic': 'mito'})

        assert response.status_code == 400
        assert 'mito' in response.get_json()['error']['message']

    def test_404(self, client):
        response = client.get('/api/does-not-exist')

        assert response.status_code == 404
        error = response.get_json()['error']
        assert error['code'] == 'NOT_FOUND'
        assert error['requestId']

    def test_405(self, client):
        response = client.get('/api/dashboard/refresh')
        assert response.status_code == 405
        assert response.get_json()['error']['code'] == 'METHOD_NOT_ALLOWED'

    def test_generated_request_id_header(self, client):
        response = client.get('/api/health')
        assert response.headers['X-Request-ID']
