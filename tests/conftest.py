import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# Settings are read at import time, so point storage and the database at a scratch directory first.
_RUNTIME_DIR = tempfile.mkdtemp(prefix="orderhub-tests-")
os.environ.setdefault("STORAGE_ROOT", os.path.join(_RUNTIME_DIR, "storage"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_RUNTIME_DIR, 'orderhub.db')}")

from orderhub.blobstore import LocalBlobStore  # noqa: E402
from orderhub.sessions import UploadSessionStore  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def blobs(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "storage"))


@pytest.fixture
def store(blobs, clock) -> UploadSessionStore:
    return UploadSessionStore(blobs, clock=clock)
