from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Survey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    title: str
    description: str
    reasons: List[str]
    # None means "use the document's defaultTargetEmail"; never stored as ""
    target_email: Optional[str] = Field(default=None, alias="targetEmail")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SurveyWithHash(Survey):
    hash: str


class SurveysConfig(BaseModel):
    """The single persisted document: global settings plus every survey."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    default_target_email: str = Field(alias="defaultTargetEmail")
    accent_color: Optional[str] = Field(default=None, alias="accentColor")
    surveys: List[Survey] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "SurveysConfig":
        return cls(default_target_email="", surveys=[])

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class ConfigValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None
    index: Optional[int] = None  # first offending survey, when the failure is per-survey
    errors: List[str] = Field(default_factory=list)


class Submission(BaseModel):
    """A respondent's answer as relayed to the notification sink."""

    survey_title: str
    survey_description: str
    target_email: str
    name: str
    reason: str
    user_email: Optional[str] = None
