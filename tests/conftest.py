from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

HERE = Path(__file__).resolve().parent
ROOT = HERE.parent
for p in (ROOT, HERE):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

# app.py initialises the database at import time
os.environ.setdefault("ICON_DB_PATH", str(Path(tempfile.mkdtemp(prefix="icons-test-")) / "runs.db"))
os.environ.setdefault("ICON_LOG_DIR", tempfile.mkdtemp(prefix="icons-logs-"))

import costs
from icon_http import ApiClient

from fakes import FakeClock, FakeSession


@pytest.fixture(autouse=True)
def isolated_cost_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    logs = tmp_path / "logs"
    monkeypatch.setattr(costs, "LOGS_DIR", logs)
    monkeypatch.setattr(costs, "COST_LOG", logs / "costs.log")
    monkeypatch.setattr(costs, "TOTALS_FILE", logs / "costs_totals.json")
    return logs


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session(clock: FakeClock) -> FakeSession:
    return FakeSession(clock)


@pytest.fixture()
def client(session: FakeSession) -> ApiClient:
    return ApiClient("sk-test", session=session)
