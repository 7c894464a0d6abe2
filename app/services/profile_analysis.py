# =============================================================================
# Profile Analysis — ATS Scoring & Structured CV Extraction
# =============================================================================
#
# Best-effort stage of the ingestion pipeline. Two prompts go to the
# configured LLM, one after the other:
#   1. ATS scoring      → AtsScoreOutput
#   2. CV extraction    → ProfileExtractionOutput
# and are merged into one ProfileAnalysis.
#
# FALLBACK POLICY: any provider error, non-JSON reply, or schema violation
# returns None. The caller stores `analysis = null` and the job still
# completes; a broken analysis never fails an otherwise successful upload.
#
# The only tolerance for formatting is a single surrounding ```json fence,
# which chat models add even when told not to. Nothing else is scraped out
# of free-form text.
# =============================================================================

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from app.config import settings
from app.models.profile import AtsScoreOutput, ProfileAnalysis, ProfileExtractionOutput
from app.services.llm import LLMProvider, get_llm_provider

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

SYSTEM_PROMPT = (
    "You are an expert CV analyst. You reply with a single valid JSON object "
    "and nothing else: no prose, no markdown."
)

ATS_PROMPT = """Analyze the following CV as an Applicant Tracking System would.

CV Content:
{cv_text}

Score it on these criteria:
1. formatting (0-20): well-formatted, easy to parse, properly structured
2. keywords (0-20): relevant keywords, technical skills, industry terms
3. contact (0-10): complete, properly formatted contact information
4. experience (0-20): clear job descriptions with quantifiable achievements
5. education (0-10): complete, relevant education information
6. sections (0-10): summary, experience, education and skills sections present
7. ats_compatibility (0-10): no complex formatting, proper headings

Return this JSON object:
{{
  "score": <number 0-100>,
  "feedback": {{
    "strengths": [<strings>],
    "weaknesses": [<strings>],
    "recommendations": [<actionable strings>]
  }},
  "breakdown": {{
    "formatting": <0-20>, "keywords": <0-20>, "contact": <0-10>,
    "experience": <0-20>, "education": <0-10>, "sections": <0-10>,
    "ats_compatibility": <0-10>
  }}
}}"""

EXTRACTION_PROMPT = """Extract structured information from the following CV.

CV Content:
{cv_text}

Return this JSON object:
{{
  "personal_information": {{
    "full_name": <string|null>, "email": <string|null>, "phone": <string|null>,
    "location": <string|null>, "linkedin": <string|null>, "github": <string|null>,
    "portfolio": <string|null>, "summary": <string|null>
  }},
  "technical_skills": [<every technical skill: languages, frameworks, databases, tools, cloud platforms>],
  "years_of_experience": <number, total professional experience, decimals allowed, or null>,
  "education": [
    {{"degree": <string|null>, "field": <string|null>, "institution": <string|null>,
      "location": <string|null>, "start_date": <string|null>, "end_date": <string|null>,
      "gpa": <string|null>, "honors": <string|null>}}
  ]
}}

Rules:
- Use null or an empty list when something is not in the CV
- Dates as "MM/YYYY", "YYYY" or "Month YYYY"; "Present" for ongoing
- Only extract information that is clearly stated"""


def parse_llm_json(content: str, model: type[ModelT]) -> ModelT:
    """
    Validate an LLM reply against `model`.

    Raises:
        pydantic.ValidationError: not JSON, or JSON that breaks the schema.
    """
    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    return model.model_validate_json(text)


def _ask(provider: LLMProvider, prompt: str, model: type[ModelT]) -> ModelT:
    response = provider.complete(
        messages=[{"role": "user", "content": prompt}],
        system=SYSTEM_PROMPT,
    )
    return parse_llm_json(response.content, model)


def analyze_profile(
    cv_text: str,
    provider: LLMProvider | None = None,
) -> ProfileAnalysis | None:
    """
    Score and extract a CV. Returns None if either half fails.

    Args:
        cv_text: Extracted document text (truncated to
            settings.profile_analysis_max_chars).
        provider: LLM provider override (tests); defaults to the configured one.
    """
    if not cv_text.strip():
        return None

    text = cv_text[: settings.profile_analysis_max_chars]
    try:
        llm = provider or get_llm_provider()
        ats = _ask(llm, ATS_PROMPT.format(cv_text=text), AtsScoreOutput)
        extraction = _ask(llm, EXTRACTION_PROMPT.format(cv_text=text), ProfileExtractionOutput)
    except ValidationError as exc:
        logger.warning(
            "Profile analysis reply failed schema validation (%d errors): %s",
            exc.error_count(), exc.errors()[0]["msg"] if exc.errors() else exc,
        )
        return None
    except Exception as exc:
        logger.warning("Profile analysis call failed: %s", exc, exc_info=True)
        return None

    return ProfileAnalysis.combine(ats, extraction, analyzed_at=datetime.now(UTC))
