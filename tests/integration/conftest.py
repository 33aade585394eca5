from __future__ import annotations

import contextlib
import os
import socket
import subprocess
import sys
import time
from collections.abc import Iterator
from pathlib import Path
from urllib import error, request

import pytest

SRC_DIR = Path(__file__).resolve().parents[2] / "src"
STARTUP_TIMEOUT_S = 20.0


def _free_port() -> int:
    with contextlib.closing(socket.socket()) as sock:
        try:
            sock.bind(("127.0.0.1", 0))
        except PermissionError:
            pytest.skip("Binding local sockets is not permitted here.")
        return sock.getsockname()[1]


def _is_healthy(base_url: str) -> bool:
    try:
        with request.urlopen(f"{base_url}/health", timeout=1.0) as response:
            return response.status == 200
    except (error.URLError, ConnectionError, TimeoutError):
        return False


@contextlib.contextmanager
def _camus_server(database_url: str, log_path: Path) -> Iterator[str]:
    port = _free_port()
    base_url = f"http://127.0.0.1:{port}"
    env = {
        **os.environ,
        "CAMUS_DATABASE_URL": database_url,
        "CAMUS_APP_ENV": "test",
        "CAMUS_OPENAI_API_KEY": "",
        "OPENAI_API_KEY": "",
    }
    with log_path.open("w", encoding="utf-8") as log_file:
        process = subprocess.Popen(  # noqa: S603
            [
                sys.executable,
                "-m",
                "uvicorn",
                "camus.api.main:app",
                "--app-dir",
                str(SRC_DIR),
                "--port",
                str(port),
            ],
            env=env,
            stdout=log_file,
            stderr=subprocess.STDOUT,
        )
        try:
            deadline = time.monotonic() + STARTUP_TIMEOUT_S
            while not _is_healthy(base_url):
                if process.poll() is not None or time.monotonic() > deadline:
                    tail = log_path.read_text(encoding="utf-8")[-2000:]
                    raise RuntimeError(f"camus server failed to start:\n{tail}")
                time.sleep(0.2)
            yield base_url
        finally:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=5)


@pytest.fixture
def postgres_url() -> str:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip("Set RUN_POSTGRES_INTEGRATION_TESTS=1 to run PostgreSQL integration tests.")
    database_url = os.getenv("CAMUS_DATABASE_URL")
    if not database_url:
        pytest.skip("CAMUS_DATABASE_URL is required for PostgreSQL integration tests.")
    return database_url


@pytest.fixture
def api_base_url(postgres_url: str, tmp_path: Path) -> Iterator[str]:
    with _camus_server(postgres_url, tmp_path / "server.log") as base_url:
        yield base_url
