from __future__ import annotations

from typing import Dict, List, Literal

from .identity import hash_of
from .schema import Survey, SurveysConfig


ImportStrategy = Literal["replace", "merge"]
ConflictPreference = Literal["source", "existing"]

IMPORT_STRATEGIES = ("replace", "merge")
CONFLICT_PREFERENCES = ("source", "existing")


def merge_configs(
    existing: SurveysConfig,
    uploaded: SurveysConfig,
    preference: ConflictPreference = "existing",
) -> SurveysConfig:
    """Reconcile an uploaded document with the live one, survey by survey.

    Surveys are matched on their title hash. Existing surveys keep their
    positions; uploaded surveys with a new hash are appended in upload order.
    On a collision ``preference`` decides: "source" takes the uploaded survey
    in place, "existing" keeps the current one.
    """
    if preference not in CONFLICT_PREFERENCES:
        raise ValueError(f"Unknown conflict preference: {preference!r}")

    positions: Dict[str, int] = {hash_of(s.title): i for i, s in enumerate(existing.surveys)}
    result: List[Survey] = [s.model_copy(deep=True) for s in existing.surveys]

    for survey in uploaded.surveys:
        survey_hash = hash_of(survey.title)
        index = positions.get(survey_hash)
        if index is None:
            positions[survey_hash] = len(result)
            result.append(survey.model_copy(deep=True))
        elif preference == "source":
            result[index] = survey.model_copy(deep=True)

    return SurveysConfig(
        default_target_email=uploaded.default_target_email or existing.default_target_email,
        accent_color=uploaded.accent_color if uploaded.accent_color is not None else existing.accent_color,
        surveys=result,
    )
