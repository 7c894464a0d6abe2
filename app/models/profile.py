# =============================================================================
# Profile Analysis Schemas — Strict Pydantic V2 Contracts
# =============================================================================
#
# The profile analysis step asks an LLM for two JSON documents (an ATS score
# and a structured CV extraction). Both are validated against the models
# below. Anything that does not validate is discarded as a whole and the
# job completes with `analysis = null`; there is no partial scraping of
# free-form text.
#
# Required vs optional:
#   AtsScoreOutput.score           required, 0–100
#   AtsScoreOutput.feedback        optional, defaults to empty lists
#   AtsScoreOutput.breakdown       optional
#   ProfileExtractionOutput.*      all optional; skills default to []
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SKILL_CATEGORIES = (
    "programming_languages",
    "frameworks",
    "databases",
    "tools",
    "cloud_platforms",
    "other",
)


def normalise_skills(value: object) -> list[str]:
    """
    Flatten the skill shapes LLMs return into one de-duplicated list.

    Accepts a flat list of strings, a dict of category → list, or a list
    whose first item is such a dict. Non-strings and blanks are dropped,
    order of first appearance is kept.
    """
    if value is None:
        return []
    if isinstance(value, list) and value and isinstance(value[0], dict):
        value = value[0]
    if isinstance(value, dict):
        keys = [k for k in _SKILL_CATEGORIES if k in value] or list(value)
        value = [skill for key in keys for skill in (value.get(key) or [])]
    if not isinstance(value, list):
        raise ValueError("skills must be a list or a dict of lists")

    seen: dict[str, None] = {}
    for skill in value:
        if isinstance(skill, str) and skill.strip():
            seen.setdefault(skill.strip(), None)
    return list(seen)


class _LenientModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EducationEntry(_LenientModel):
    degree: str | None = None
    field: str | None = None
    institution: str | None = None
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    gpa: str | None = None
    honors: str | None = None


class PersonalInformation(_LenientModel):
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    linkedin: str | None = None
    github: str | None = None
    portfolio: str | None = None
    summary: str | None = None


class AtsFeedback(_LenientModel):
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class AtsBreakdown(_LenientModel):
    formatting: float = Field(ge=0, le=20)
    keywords: float = Field(ge=0, le=20)
    contact: float = Field(ge=0, le=10)
    experience: float = Field(ge=0, le=20)
    education: float = Field(ge=0, le=10)
    sections: float = Field(ge=0, le=10)
    ats_compatibility: float = Field(ge=0, le=10)


class AtsScoreOutput(_LenientModel):
    """LLM output #1 — ATS scoring."""

    score: float = Field(ge=0, le=100)
    feedback: AtsFeedback = Field(default_factory=AtsFeedback)
    breakdown: AtsBreakdown | None = None


class ProfileExtractionOutput(_LenientModel):
    """LLM output #2 — structured CV extraction."""

    personal_information: PersonalInformation | None = None
    technical_skills: list[str] = Field(default_factory=list)
    years_of_experience: float | None = Field(default=None, ge=0, le=80)
    education: list[EducationEntry] = Field(default_factory=list)

    @field_validator("technical_skills", mode="before")
    @classmethod
    def _flatten_skills(cls, value: object) -> list[str]:
        return normalise_skills(value)


class ProfileAnalysis(BaseModel):
    """
    Combined analysis stored in `result.analysis` and on the user document.

    Core fields: skills, experience_years, education, score.
    """

    skills: list[str] = Field(default_factory=list)
    experience_years: float | None = None
    education: list[EducationEntry] = Field(default_factory=list)
    score: int | None = Field(default=None, ge=0, le=100)
    personal_information: PersonalInformation | None = None
    feedback: AtsFeedback | None = None
    breakdown: AtsBreakdown | None = None
    analyzed_at: datetime

    @classmethod
    def combine(
        cls,
        ats: AtsScoreOutput,
        extraction: ProfileExtractionOutput,
        analyzed_at: datetime,
    ) -> "ProfileAnalysis":
        return cls(
            skills=extraction.technical_skills,
            experience_years=extraction.years_of_experience,
            education=extraction.education,
            score=round(ats.score),
            personal_information=extraction.personal_information,
            feedback=ats.feedback,
            breakdown=ats.breakdown,
            analyzed_at=analyzed_at,
        )
