import os

import pytest

# Applied before any freshline import so module-level settings see them.
TEST_ENV = {
    "ENVIRONMENT": "test",
    "PAGE_ORIGIN": "http://localhost:8080",
    "WS_URL": "",
    "API_BASE_URL": "",
    "LOG_LEVEL": "DEBUG",
    "LOG_JSON": "false",
    "LOG_FILE": "",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value


def pytest_addoption(parser):
    parser.addoption(
        "--ws-url",
        action="store",
        default="",
        help="Live realtime endpoint for the optional smoke test (skipped when empty)",
    )


@pytest.fixture(scope="session")
def live_ws_url(pytestconfig):
    return pytestconfig.getoption("--ws-url")
