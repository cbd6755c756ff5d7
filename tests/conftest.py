import sys
from datetime import datetime
from unittest.mock import MagicMock

import pytest

# Mock fcntl for Windows
if sys.platform.startswith("win"):
    if "fcntl" not in sys.modules:
        mock_fcntl = MagicMock()
        mock_fcntl.LOCK_EX = 1
        mock_fcntl.LOCK_NB = 2
        mock_fcntl.LOCK_UN = 8
        sys.modules["fcntl"] = mock_fcntl

from locomotive.config_manager import Settings
from locomotive.database import QueueItem, get_session_factory
from locomotive.events import EventEmitter
from locomotive.queue_store import QueueStore
from locomotive.transfer_types import RunContext

CURRENT_RUN = "run-current"
PREVIOUS_RUN = "run-previous"


@pytest.fixture
def store():
    queue_store = QueueStore(get_session_factory(":memory:")())
    yield queue_store
    queue_store.close()


@pytest.fixture
def add_row(store):
    """Inserts a store row; returns the saved QueueItem."""
    counter = {"n": 0}

    def _add(name: str, **fields) -> QueueItem:
        counter["n"] += 1
        row = store.first_or_new(fields.pop("fingerprint", f"fp{counter['n']:030d}"))
        row.name = name
        row.run_id = fields.pop("run_id", PREVIOUS_RUN)
        row.source_dir = fields.pop("source_dir", "/remote/a")
        for key, value in fields.items():
            setattr(row, key, value)
        return store.save(row)

    return _add


@pytest.fixture
def settings(tmp_path):
    working = tmp_path / "working"
    working.mkdir()
    return Settings(
        host="seedbox.example",
        sources=["/remote/a"],
        targets=[str(tmp_path / "target")],
        username="user",
        password="secret",
        working_dir=str(working),
        database_path=":memory:",
    )


@pytest.fixture
def ctx():
    return RunContext(
        run_id=CURRENT_RUN,
        started_at=datetime(2024, 1, 1, 12, 0),
        last_run=datetime(2024, 1, 1, 11, 0),
    )


@pytest.fixture
def emitter():
    event_emitter = EventEmitter()
    recorder = MagicMock()
    for event in ("transferStarted", "transferComplete", "transferFailed", "itemMoved"):
        event_emitter.add_listener(event, recorder)
    event_emitter.recorder = recorder
    return event_emitter
