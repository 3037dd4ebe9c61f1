import os

import pytest

LIVE_CREDENTIAL_VARS = ('MF_CLIENT_ID_YOKOHAMA', 'MF_CLIENT_SECRET_YOKOHAMA')


def pytest_addoption(parser):
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=os.environ.get('MF_RUN_INTEGRATION', '').lower() in ('1', 'true', 'yes'),
        help="Run tests that call the live Medical Force API (or set MF_RUN_INTEGRATION=1).",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: calls the live Medical Force API with MF_CLIENT_ID_* / MF_CLIENT_SECRET_* credentials"
    )


def pytest_collection_modifyitems(config, items):
    live = [item for item in items if "integration" in item.keywords]
    if not live:
        return

    if not config.getoption("--run-integration"):
        reason = "live Medical Force test (use --run-integration to run)"
    elif not all(os.environ.get(name) for name in LIVE_CREDENTIAL_VARS):
        reason = f"live Medical Force test needs {' and '.join(LIVE_CREDENTIAL_VARS)}"
    else:
        return

    for item in live:
        item.add_marker(pytest.mark.skip(reason=reason))
