"""
Tests for Request Pacer

Fixed inter-request delay per (route group, tenant) lane, YAML config.
"""

import pytest

from services.request_pacer import DEFAULT_DELAY_SECONDS, RequestPacer


class TestWait:

    def test_first_request_not_delayed(self, pacer, sleeps):
        assert pacer.wait('daily_accounts', 'mito') == 0.0
        assert sleeps == []

    def test_following_requests_delayed(self, pacer, sleeps):
        for _ in range(3):
            pacer.wait('daily_accounts', 'mito')
        assert sleeps == [0.2, 0.2]

    def test_lanes_are_independent(self, pacer, sleeps):
        pacer.wait('daily_accounts', 'mito')
        pacer.wait('daily_accounts', 'omiya')
        assert sleeps == []

    def test_reset_one_key(self, pacer, sleeps):
        pacer.wait('daily_accounts', 'mito')
        pacer.wait('daily_accounts', 'omiya')
        pacer.reset('mito')

        pacer.wait('daily_accounts', 'mito')
        pacer.wait('daily_accounts', 'omiya')

        assert sleeps == [0.2]

    def test_reset_all(self, pacer, sleeps):
        pacer.wait('daily_accounts', 'mito')
        pacer.reset()
        pacer.wait('daily_accounts', 'mito')
        assert sleeps == []

    def test_zero_delay_never_sleeps(self, sleeps):
        pacer = RequestPacer(delay_override=0, sleep=sleeps.append)
        pacer.wait('daily_accounts', 'mito')
        pacer.wait('daily_accounts', 'mito')
        assert sleeps == []

    def test_status(self, pacer):
        pacer.wait('daily_accounts', 'omiya')
        pacer.wait('daily_accounts', 'mito')
        status = pacer.get_status('daily_accounts')
        assert status['active_keys'] == ['mito', 'omiya']
        assert status['delay_seconds'] == 0.2


class TestConfig:

    def test_bundled_yaml(self):
        pacer = RequestPacer()
        assert pacer.get_delay('daily_accounts') == 0.2
        assert pacer.get_delay('token') == 0.0
        assert pacer.get_delay('anything_else') == 0.2

    def test_custom_yaml(self, tmp_path):
        path = tmp_path / 'pacing.yaml'
        path.write_text(
            "defaults:\n"
            "  delay_seconds: 1.5\n"
            "routes:\n"
            "  daily_accounts:\n"
            "    delay_seconds: 0.5\n"
        )
        pacer = RequestPacer(config_path=str(path))
        assert pacer.get_delay('daily_accounts') == 0.5
        assert pacer.get_delay('token') == 1.5

    def test_missing_file_uses_defaults(self, tmp_path):
        pacer = RequestPacer(config_path=str(tmp_path / 'missing.yaml'))
        assert pacer.get_delay('daily_accounts') == DEFAULT_DELAY_SECONDS

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text("")
        assert RequestPacer(config_path=str(path)).get_delay('daily_accounts') == DEFAULT_DELAY_SECONDS

    @pytest.mark.parametrize("override", [0.0, 0.75])
    def test_override_beats_config(self, override):
        assert RequestPacer(delay_override=override).get_delay('daily_accounts') == override
