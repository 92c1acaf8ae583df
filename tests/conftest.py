from __future__ import annotations

import json
from typing import Dict, List

import pytest

from surwhen.errors import BlobNotFound
from surwhen.mailer import SubmissionMailer
from surwhen.storage import StorageBackend
from surwhen.surveys.repository import SurveyRepository
from surwhen.surveys.schema import Submission


SEED_DOCUMENT = {
    "defaultTargetEmail": "team@example.com",
    "accentColor": "#112233",
    "surveys": [
        {
            "title": "Leaving early",
            "description": "Why do you leave before the end?",
            "reasons": ["Train", "Tired"],
        },
        {
            "title": "Skipping lunch",
            "description": "Why are you skipping lunch?",
            "reasons": ["Not hungry"],
            "targetEmail": "kitchen@example.com",
        },
    ],
}


class MemoryStorage(StorageBackend):
    """In-memory backend recording every write."""

    name = "memory"

    def __init__(self) -> None:
        self.blobs: Dict[str, str] = {}
        self.writes: List[str] = []

    async def read(self, key: str) -> str:
        if key not in self.blobs:
            raise BlobNotFound(key)
        return self.blobs[key]

    async def write(self, key: str, content: str) -> None:
        self.blobs[key] = content
        self.writes.append(key)

    async def exists(self, key: str) -> bool:
        return key in self.blobs


class RecordingMailer(SubmissionMailer):
    def __init__(self) -> None:
        super().__init__()
        self.sent: List[Submission] = []

    async def send(self, submission: Submission) -> None:
        self.sent.append(submission)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def seed_file(tmp_path):
    path = tmp_path / "seed.json"
    path.write_text(json.dumps(SEED_DOCUMENT), encoding="utf-8")
    return path


@pytest.fixture
def repo(storage, seed_file):
    return SurveyRepository(storage, seed_path=seed_file)


@pytest.fixture
def stored_document(storage):
    """Read back what is currently persisted under the default key."""

    def _read():
        return json.loads(storage.blobs["surveys.json"])

    return _read
