from .identity import hash_of
from .repository import SurveyRepository
from .schema import Survey, SurveysConfig, SurveyWithHash

__all__ = ["hash_of", "Survey", "SurveyRepository", "SurveysConfig", "SurveyWithHash"]
