"""The survey configuration store.

All surveys and global settings live in one JSON document. Every operation
loads the whole document, changes it in memory and writes the whole document
back. There is no locking: two writers racing on different processes end up
with whichever save landed last.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import anyio
from pydantic import ValidationError

from ..config import DEFAULT_SEED_PATH
from ..errors import (
    CorruptConfig,
    DuplicateTitle,
    InvalidEmail,
    NotFound,
    SurveyNotFound,
    SurveyValidationError,
)
from ..storage import StorageBackend
from .identity import hash_of
from .merge import (
    CONFLICT_PREFERENCES,
    IMPORT_STRATEGIES,
    ConflictPreference,
    ImportStrategy,
    merge_configs,
)
from .schema import Survey, SurveysConfig, SurveyWithHash
from .validation import is_valid_email, validate_config_document, validate_survey


logger = logging.getLogger(__name__)

DEFAULT_KEY = "surveys.json"

# wire name -> model field
SURVEY_FIELDS = {
    "title": "title",
    "description": "description",
    "reasons": "reasons",
    "targetEmail": "target_email",
}


def serialize_config(config: SurveysConfig) -> str:
    return json.dumps(config.to_dict(), ensure_ascii=False, indent=2)


def parse_config(content: str) -> SurveysConfig:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise CorruptConfig(f"Surveys document is not valid JSON: {exc}") from exc
    try:
        return SurveysConfig.model_validate(data)
    except ValidationError as exc:
        raise CorruptConfig(f"Surveys document has an unexpected shape: {exc}") from exc


def _clean_target_email(value: Any) -> Optional[str]:
    # "" and None both mean "fall back to the default recipient"
    return value or None


def _survey_from_payload(data: Mapping[str, Any]) -> Survey:
    return Survey(
        title=data["title"],
        description=data["description"],
        reasons=list(data["reasons"]),
        target_email=_clean_target_email(data.get("targetEmail")),
    )


class SurveyRepository:
    def __init__(
        self,
        storage: StorageBackend,
        *,
        key: str = DEFAULT_KEY,
        seed_path: Optional[Union[str, Path]] = DEFAULT_SEED_PATH,
    ) -> None:
        self.storage = storage
        self.key = key
        self.seed_path = Path(seed_path) if seed_path else None

    # -- document level -----------------------------------------------------

    async def _seed_content(self) -> str:
        if self.seed_path is not None:
            try:
                content = await anyio.Path(self.seed_path).read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Seed document %s unavailable (%s); starting empty", self.seed_path, exc)
            else:
                logger.info("Seeding %s from %s", self.key, self.seed_path)
                return content
        else:
            logger.info("Seeding %s with an empty document", self.key)
        return serialize_config(SurveysConfig.empty())

    async def ensure_seeded(self) -> None:
        """Create the document from the seed if storage does not have it yet."""
        if await self.storage.exists(self.key):
            return
        await self.storage.write(self.key, await self._seed_content())

    async def load(self) -> SurveysConfig:
        await self.ensure_seeded()
        try:
            content = await self.storage.read(self.key)
        except NotFound:
            # exists() and read() can disagree on eventually consistent stores
            content = await self._seed_content()
        try:
            return parse_config(content)
        except CorruptConfig:
            logger.error("Refusing to serve corrupt surveys document %s", self.key)
            raise

    async def save(self, config: SurveysConfig) -> None:
        await self.ensure_seeded()
        await self.storage.write(self.key, serialize_config(config))

    async def export_config(self) -> str:
        return serialize_config(await self.load())

    # -- queries ------------------------------------------------------------

    async def list_surveys(self) -> List[SurveyWithHash]:
        config = await self.load()
        return [SurveyWithHash(**{**s.to_dict(), "hash": hash_of(s.title)}) for s in config.surveys]

    async def get_by_hash(self, survey_hash: str) -> Optional[Survey]:
        config = await self.load()
        for survey in config.surveys:
            if hash_of(survey.title) == survey_hash:
                return survey
        return None

    async def get_target_email(self, survey: Survey) -> str:
        if survey.target_email is not None:
            return survey.target_email
        config = await self.load()
        return config.default_target_email

    # -- survey mutations ---------------------------------------------------

    async def add_survey(self, data: Mapping[str, Any]) -> Survey:
        result = validate_survey(data)
        if not result.valid:
            raise SurveyValidationError(result.errors)

        survey = _survey_from_payload(data)
        config = await self.load()
        if any(s.title == survey.title for s in config.surveys):
            raise DuplicateTitle(survey.title)

        config.surveys.append(survey)
        await self.save(config)
        logger.info("Added survey %r (%s)", survey.title, hash_of(survey.title))
        return survey

    @staticmethod
    def _index_of(config: SurveysConfig, survey_hash: str) -> int:
        for index, survey in enumerate(config.surveys):
            if hash_of(survey.title) == survey_hash:
                return index
        raise SurveyNotFound(survey_hash)

    async def update_survey(self, survey_hash: str, updates: Mapping[str, Any]) -> Survey:
        """Apply the fields present in ``updates``; leave the others alone.

        A ``targetEmail`` of None or "" removes the override. A changed title
        changes the survey's hash, so links to the old hash stop working.
        """
        updates = {k: v for k, v in updates.items() if k in SURVEY_FIELDS}
        result = validate_survey(updates, partial=True)
        if not result.valid:
            raise SurveyValidationError(result.errors)

        config = await self.load()
        index = self._index_of(config, survey_hash)
        current = config.surveys[index]

        new_title = updates.get("title")
        if new_title is not None and new_title != current.title:
            if any(i != index and s.title == new_title for i, s in enumerate(config.surveys)):
                raise DuplicateTitle(new_title)

        changes: Dict[str, Any] = {}
        for name, value in updates.items():
            if name == "targetEmail":
                changes["target_email"] = _clean_target_email(value)
            elif name == "reasons":
                changes["reasons"] = list(value)
            else:
                changes[SURVEY_FIELDS[name]] = value

        updated = current.model_copy(update=changes)
        config.surveys[index] = updated
        await self.save(config)
        logger.info(
            "Updated survey %s -> %s (%s)",
            survey_hash, hash_of(updated.title), ", ".join(updates) or "no fields",
        )
        return updated

    async def delete_survey(self, survey_hash: str) -> None:
        config = await self.load()
        index = self._index_of(config, survey_hash)
        removed = config.surveys.pop(index)
        await self.save(config)
        logger.info("Deleted survey %r (%s)", removed.title, survey_hash)

    # -- settings -----------------------------------------------------------

    async def update_default_target_email(self, email: str) -> None:
        if not is_valid_email(email):
            raise InvalidEmail(email)
        config = await self.load()
        config.default_target_email = email
        await self.save(config)
        logger.info("Default target email changed")

    async def update_accent_color(self, color: Optional[str]) -> None:
        """Set the accent color verbatim; None or "" reverts to the built-in color."""
        config = await self.load()
        config.accent_color = color or None
        await self.save(config)
        logger.info("Accent color set to %s", config.accent_color or "default")

    # -- import -------------------------------------------------------------

    async def merge(self, uploaded: SurveysConfig, preference: ConflictPreference) -> SurveysConfig:
        """Return the live document merged with ``uploaded``; nothing is saved."""
        existing = await self.load()
        return merge_configs(existing, uploaded, preference)

    async def import_config(
        self,
        raw: Any,
        strategy: ImportStrategy = "merge",
        preference: ConflictPreference = "existing",
    ) -> SurveysConfig:
        if strategy not in IMPORT_STRATEGIES:
            raise SurveyValidationError([f"Unknown strategy: {strategy}"])
        if preference not in CONFLICT_PREFERENCES:
            raise SurveyValidationError([f"Unknown conflict preference: {preference}"])

        check = validate_config_document(raw)
        if not check.valid:
            message = check.error or "Invalid configuration"
            raise SurveyValidationError(check.errors or [message], message=message)

        # rebuilt from the known fields only, so stray keys such as "hash" never get stored
        uploaded = SurveysConfig(
            default_target_email=raw["defaultTargetEmail"],
            accent_color=raw.get("accentColor") or None,
            surveys=[_survey_from_payload(item) for item in raw["surveys"]],
        )
        result = uploaded if strategy == "replace" else await self.merge(uploaded, preference)
        await self.save(result)
        logger.info(
            "Imported %d surveys (strategy=%s, preference=%s); document now has %d",
            len(uploaded.surveys), strategy, preference, len(result.surveys),
        )
        return result
