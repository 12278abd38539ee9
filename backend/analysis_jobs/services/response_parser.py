"""Response parsing for conversation-analysis results.

Providers are asked for a single JSON object but regularly wrap it in
Markdown fences, add prose around it, or leave trailing commas. The repair
pipeline here turns that text into the analysis payload. It is pure (no
I/O) and never raises: once the provider call itself succeeded, the caller
always gets a schema-valid object, degraded to the fallback result if the
text cannot be recovered.
"""
import json
import logging
import re
from datetime import datetime, timezone

from analysis_jobs.errors import MalformedResponseError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("detectedLanguage", "overallSummary")

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` markers anywhere in the text."""
    return _FENCE_RE.sub("", text).strip()


def extract_json_span(text: str) -> str:
    """Cut the text down to the first '{' ... last '}' span."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or start >= end:
        raise MalformedResponseError("No valid JSON object found in response")
    return text[start:end + 1]


def clean_json_text(text: str) -> str:
    """Fix the usual LLM JSON mistakes: trailing commas, control chars, CRLF."""
    cleaned = text.replace("\r\n", "\n")
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    # Raw newlines/tabs inside strings are invalid JSON; between tokens they are noise
    cleaned = _CONTROL_CHARS_RE.sub("", cleaned)
    return cleaned


def _parse_span(span: str):
    # Well-formed objects are parsed untouched
    try:
        return json.loads(span)
    except json.JSONDecodeError:
        return json.loads(clean_json_text(span))


def repair_response_text(text: str) -> dict:
    """Run the repair steps and parse. Raises MalformedResponseError or ValueError.

    Fence markers are only stripped when the raw span does not parse, so
    backticks inside string values survive.
    """
    span = extract_json_span(text)
    try:
        parsed = _parse_span(span)
    except json.JSONDecodeError:
        try:
            parsed = _parse_span(extract_json_span(strip_code_fences(text)))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in response: {e}") from e

    if not isinstance(parsed, dict):
        raise ValueError("Response is not a valid object")
    return parsed


def build_fallback_result(provider: str, error: str) -> dict:
    """Minimal valid analysis payload carrying a visible parsing-issue insight."""
    return {
        "detectedLanguage": "English",
        "overallSummary": (
            f"Analysis completed with {provider}, but there was an issue parsing the "
            "detailed results. The conversation appears to contain meaningful "
            "communication patterns."
        ),
        "insights": [
            {
                "type": "text",
                "title": "Parsing Issue",
                "content": (
                    f"The AI analysis from {provider} completed but encountered a formatting "
                    "issue. Please try again or contact support if this persists."
                ),
                "metadata": {
                    "category": "system",
                    "priority": 1,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "error": error,
                },
            },
        ],
        "personality": {
            "traits": ["communicative"],
            "summary": "Basic communication patterns detected",
        },
        "communicationPatterns": ["Standard conversational exchange"],
        "topics": ["General conversation"],
        "emotionalArc": [
            {
                "timestamp": "0:00",
                "emotion": "neutral",
                "intensity": 0.5,
                "context": "Conversation analysis",
            },
        ],
    }


def parse_analysis_response(text: str, provider: str) -> dict:
    """Parse provider text into the analysis payload; fall back instead of raising."""
    try:
        parsed = repair_response_text(text or "")
    except (MalformedResponseError, ValueError) as e:
        logger.error(f"JSON parsing error from {provider}: {e}")
        logger.debug(f"Raw content from {provider}: {(text or '')[:500]}")
        return build_fallback_result(provider, str(e))

    for field in REQUIRED_FIELDS:
        if not parsed.get(field):
            logger.warning(f"Missing required field: {field} from {provider}")

    if not isinstance(parsed.get("insights"), list):
        logger.warning(f"Missing or invalid insights array from {provider}")
        parsed["insights"] = []

    return parsed
