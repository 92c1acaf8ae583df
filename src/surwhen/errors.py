from __future__ import annotations

from typing import List


class SurveyStoreError(Exception):
    """Base class for everything the survey store raises."""


class NotFound(SurveyStoreError, LookupError):
    pass


class SurveyNotFound(NotFound):
    def __init__(self, survey_hash: str) -> None:
        super().__init__("Survey not found")
        self.survey_hash = survey_hash


class BlobNotFound(NotFound):
    def __init__(self, key: str) -> None:
        super().__init__(f"Storage key not found: {key}")
        self.key = key


class DuplicateTitle(SurveyStoreError):
    def __init__(self, title: str) -> None:
        super().__init__("A survey with this title already exists")
        self.title = title


class SurveyValidationError(SurveyStoreError, ValueError):
    """Input failed structural checks; ``errors`` lists every violated rule."""

    def __init__(self, errors: List[str], message: str = "Validation failed") -> None:
        super().__init__(message)
        self.errors = list(errors)


class InvalidEmail(SurveyValidationError):
    def __init__(self, email: str) -> None:
        super().__init__(["Invalid email format"], message="Invalid email format")
        self.email = email


class CorruptConfig(SurveyStoreError):
    """Stored document is not valid JSON of the expected shape."""


class StorageError(SurveyStoreError, OSError):
    pass


class TransientStorageError(StorageError):
    """A remote storage failure that may succeed when retried."""


class NotificationError(Exception):
    """Submission e-mail could not be delivered."""
