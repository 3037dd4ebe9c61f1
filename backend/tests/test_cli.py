"""
Tests for the mf-sync CLI

Commands run through click's CliRunner with the coordinator and cache
injected via ctx.obj, so nothing touches the network.
"""

import json

import pytest
from click.testing import CliRunner

from cli import cli


def _json_output(result):
    """JSON document in the command output, ignoring any log lines around it."""
    text = result.output
    return json.loads(text[text.index("{"):text.rindex("}") + 1])


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, coordinator, cache_store):
    def _invoke(*args):
        return runner.invoke(
            cli, list(args), obj={'coordinator': coordinator, 'cache_store': cache_store}
        )
    return _invoke


class TestBootstrap:

    def test_summary(self, invoke, seeded_client):
        result = invoke('bootstrap')

        assert result.exit_code == 0, result.output
        assert "[1/4] 横浜院 (yokohama) loaded" in result.output
        assert "[4/4] 大宮院 (omiya) loaded" in result.output
        assert "BOOTSTRAP SUMMARY" in result.output
        assert "State:     ready" in result.output

    def test_degraded_tenant_reported(self, invoke, seeded_client):
        seeded_client.rejected_clients.add('koriyama')

        result = invoke('bootstrap')

        assert result.exit_code == 0
        assert "koriyama: Token exchange rejected" in result.output

    def test_nothing_reachable(self, invoke, seeded_client):
        seeded_client.rejected_clients.update(['yokohama', 'koriyama', 'mito', 'omiya'])

        result = invoke('bootstrap')

        assert result.exit_code == 1
        assert "Bootstrap failed" in result.output


class TestRefresh:

    def test_one_clinic(self, invoke, seeded_client):
        result = invoke('refresh', '--clinic', 'MITO')

        assert result.exit_code == 0, result.output
        assert "REFRESH SUMMARY" in result.output
        assert "Succeeded: mito" in result.output

    def test_failed_refresh_exits_nonzero(self, invoke, coordinator, seeded_client):
        from services.medical_force_client import TransientFetchError

        coordinator.connect()
        seeded_client.fail_month('omiya', '2024-01', TransientFetchError("HTTP 504", 504))

        result = invoke('refresh', '--clinic', 'omiya')

        assert result.exit_code == 1

    def test_unknown_clinic(self, invoke):
        result = invoke('refresh', '--clinic', 'nagoya')
        assert result.exit_code == 2


class TestSnapshot:

    def test_json(self, invoke, coordinator, seeded_client):
        coordinator.connect()

        result = invoke('snapshot', '--clinic', 'yokohama', '--start', '2023-12-01', '--end', '2024-01-20', '--json')

        assert result.exit_code == 0, result.output
        payload = _json_output(result)
        assert payload['tenant_selection'] == 'yokohama'
        assert payload['record_count'] == 3
        assert payload['staff_ranking'][0]['staff_name'] == 'unknown'

    def test_text_summary(self, invoke, coordinator, seeded_client):
        coordinator.connect()

        result = invoke('snapshot')

        assert result.exit_code == 0, result.output
        assert "SNAPSHOT - all 2024-01-01 .. 2024-01-20" in result.output
        assert "Visits:       4" in result.output
        assert "Revenue:      57,000" in result.output
        assert "TOP STAFF:" in result.output

    def test_bootstraps_when_needed(self, invoke, seeded_client):
        result = invoke('snapshot', '--clinic', 'omiya')

        assert result.exit_code == 0, result.output
        assert "[4/4]" in result.output
        assert "Records:      1" in result.output

    def test_end_only_in_a_past_month(self, invoke, coordinator, seeded_client):
        coordinator.connect()

        result = invoke('snapshot', '--end', '2023-12-31')

        assert result.exit_code == 0, result.output
        assert "SNAPSHOT - all 2023-12-01 .. 2023-12-31" in result.output
        assert "Records:      1" in result.output

    def test_start_after_end(self, invoke):
        result = invoke('snapshot', '--start', '2024-02-01', '--end', '2024-01-01')
        assert result.exit_code == 2

    def test_bad_date_format(self, invoke):
        result = invoke('snapshot', '--start', '01/02/2024')
        assert result.exit_code == 2


class TestCacheCommands:

    def test_info_json(self, invoke, coordinator, seeded_client):
        coordinator.connect()

        result = invoke('cache-info', '--clinic', 'mito', '--json')

        assert result.exit_code == 0, result.output
        info = _json_output(result)
        assert info['entries'] == 15
        assert info['keys'][0] == 'daily_accounts_v4_mito_2022_11'

    def test_info_text(self, invoke):
        result = invoke('cache-info')
        assert "Schema version: v4" in result.output
        assert "Entries:        0" in result.output

    def test_clear(self, invoke, coordinator, seeded_client, cache_store):
        coordinator.connect()

        result = invoke('cache-clear', '--clinic', 'omiya')

        assert result.exit_code == 0
        assert "Removed 15 cache entries" in result.output
        assert cache_store.info('omiya')['entries'] == 0
        assert cache_store.info('mito')['entries'] == 15


class TestTokenStatus:

    def test_all_valid(self, invoke):
        result = invoke('token-status')

        assert result.exit_code == 0, result.output
        assert result.output.count("valid=True") == 4

    def test_rejected_client(self, invoke, fake_client):
        fake_client.rejected_clients.add('mito')

        result = invoke('token-status')

        assert result.exit_code == 1
        assert "mito       FAILED" in result.output


class TestVersion:

    def test_version(self, runner):
        result = runner.invoke(cli, ['--version'])
        assert result.exit_code == 0
        assert "1.0.0" in result.output
