"""Analysis prompt templates.

Templates are opaque prompt strings; the only thing this module knows
about them is the ``${chatContent}`` placeholder that receives the
uploaded conversation.
"""
import logging
from dataclasses import dataclass

from analysis_jobs.errors import PromptPreparationError

logger = logging.getLogger(__name__)

CONTENT_PLACEHOLDER = "${chatContent}"

_JSON_CONTRACT = (
    "Respond with a single JSON object only. It must contain the keys "
    '"detectedLanguage" (string), "overallSummary" (string) and "insights" '
    "(array of objects with type, title, content, metadata)."
)


@dataclass(frozen=True)
class AnalysisTemplate:
    id: str
    name: str
    system_prompt: str
    analysis_prompt: str


BUILTIN_TEMPLATES: dict[str, AnalysisTemplate] = {
    t.id: t for t in (
        AnalysisTemplate(
            id="general-analysis",
            name="General conversation analysis",
            system_prompt=(
                "You are an expert in interpersonal communication. " + _JSON_CONTRACT
            ),
            analysis_prompt=(
                "Analyse the following conversation. Summarise it, identify the main "
                "topics, the emotional arc and notable communication patterns.\n\n"
                "Conversation:\n" + CONTENT_PLACEHOLDER
            ),
        ),
        AnalysisTemplate(
            id="communication-style",
            name="Communication style",
            system_prompt=(
                "You assess how each participant communicates. " + _JSON_CONTRACT
            ),
            analysis_prompt=(
                "Describe each participant's communication style, strengths and "
                "habits worth changing.\n\nConversation:\n" + CONTENT_PLACEHOLDER
            ),
        ),
        AnalysisTemplate(
            id="relationship-dynamics",
            name="Relationship dynamics",
            system_prompt=(
                "You analyse relationship dynamics in conversations. " + _JSON_CONTRACT
            ),
            analysis_prompt=(
                "Identify power balance, rapport, conflict points and repair attempts "
                "in this conversation.\n\nConversation:\n" + CONTENT_PLACEHOLDER
            ),
        ),
    )
}


def get_template(template_id: str) -> AnalysisTemplate:
    template = BUILTIN_TEMPLATES.get(template_id)
    if template is None:
        raise PromptPreparationError(f"Template not found: {template_id}")
    return template


def prepare_prompts(template_id: str, file_content: str) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) with the conversation substituted in."""
    if not file_content or not file_content.strip():
        raise PromptPreparationError("File content is empty")

    template = get_template(template_id)
    if CONTENT_PLACEHOLDER not in template.analysis_prompt:
        raise PromptPreparationError(
            f"Template {template_id} is missing the {CONTENT_PLACEHOLDER} placeholder"
        )

    user_prompt = template.analysis_prompt.replace(CONTENT_PLACEHOLDER, file_content)
    logger.debug(f"Prepared prompt from template {template_id} ({len(file_content)} chars of content)")
    return template.system_prompt, user_prompt
