"""
Pytest configuration and shared fixtures.

Engine tests run a small Python child process in place of ffmpeg so the session
lifecycle can be exercised without an ffmpeg install. The optional end-to-end
test reads its source URL from the environment (see ``test_integration.py``);
locally, add it to your .env file.
"""

import os
import sys
from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv

from transcode_relay.configs import Settings
from transcode_relay.main import create_app
from transcode_relay.remuxer.transcoder import FFmpegEngine

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

# Echoes stdin to stdout and reports one second of progress, like a copy remux would.
CAT_SCRIPT = """
import sys
sys.stderr.write("out_time_us=1000000\\nout_time=00:00:01.000000\\nprogress=continue\\n")
sys.stderr.flush()
while True:
    chunk = sys.stdin.buffer.read1(65536)
    if not chunk:
        break
    sys.stdout.buffer.write(chunk)
    sys.stdout.buffer.flush()
sys.stderr.write("progress=end\\n")
sys.stderr.flush()
"""

# Rejects its input before writing anything.
FAIL_SCRIPT = """
import sys
sys.stderr.write("pipe:0: Invalid data found when processing input\\n")
sys.stderr.flush()
sys.exit(1)
"""

# Never produces output.
STALL_SCRIPT = """
import sys
import time
while sys.stdin.buffer.read1(65536):
    pass
time.sleep(60)
"""

# Produces output forever, whatever the input.
ENDLESS_SCRIPT = """
import sys
while True:
    sys.stdout.buffer.write(b"\\x00" * 65536)
    sys.stdout.buffer.flush()
"""


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


SCRIPTS = {
    "cat": CAT_SCRIPT,
    "fail": FAIL_SCRIPT,
    "stall": STALL_SCRIPT,
    "endless": ENDLESS_SCRIPT,
}


class ScriptEngine(FFmpegEngine):
    """FFmpegEngine that runs a Python script instead of ffmpeg and records every start."""

    def __init__(self, settings: Settings, script: str = CAT_SCRIPT):
        super().__init__(settings)
        self.script = script
        self.started = []
        self.sessions = []

    def build_command(self, strategy):
        return [sys.executable, "-c", self.script]

    async def start(self, strategy, source, **kwargs):
        self.started.append(strategy)
        session = await super().start(strategy, source, **kwargs)
        self.sessions.append(session)
        return session


@pytest.fixture
def get_test_url():
    """
    Factory fixture that returns a function to get test URLs from environment.

    Usage:
        def test_something(get_test_url):
            url = get_test_url("h264")
            if url is None:
                pytest.skip("TEST_URL_H264 not set")
    """

    def _get_url(name: str) -> str | None:
        return os.environ.get(f"TEST_URL_{name.upper()}")

    return _get_url


@pytest.fixture
def make_settings():
    """Factory for isolated settings that ignore the local .env file."""

    def _make(**overrides) -> Settings:
        overrides.setdefault("probe_size", 64 * 1024)
        overrides.setdefault("transcode_timeout", 30)
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def make_engine(make_settings):
    """
    Factory for a ScriptEngine running one of SCRIPTS ("cat", "fail", "stall", "endless").
    """

    def _make(script: str = "cat", **setting_overrides) -> ScriptEngine:
        return ScriptEngine(make_settings(**setting_overrides), SCRIPTS[script])

    return _make


@pytest.fixture
def upstream():
    """
    In-memory upstream served through httpx.MockTransport.

    Usage:
        upstream.add("https://media.example.com/a.mkv", b"...", headers={"content-length": "10"})
    """

    class Upstream:
        def __init__(self):
            self.routes = {}
            self.requests = []

        def add(self, url, body=b"", status_code=200, headers=None):
            self.routes[url] = (status_code, body, headers or {})

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            route = self.routes.get(str(request.url))
            if route is None:
                raise httpx.ConnectError("Name or service not known", request=request)
            status_code, body, headers = route
            content = body() if callable(body) else body
            return httpx.Response(status_code, content=content, headers=headers)

        @property
        def transport(self) -> httpx.MockTransport:
            return httpx.MockTransport(self.handler)

    return Upstream()


@pytest.fixture
def make_client(make_engine, upstream):
    """
    Factory returning ``(client, engine)`` for an app wired to the in-memory upstream.
    """

    def _make(script: str = "cat", **setting_overrides):
        engine = make_engine(script, **setting_overrides)
        app = create_app(engine.settings, engine=engine, upstream_transport=upstream.transport)
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay.test")
        return client, engine

    return _make
