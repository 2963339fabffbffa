"""Follow-up email drafting.

Uses the LLM when one is configured and falls back to a deterministic
template otherwise, so drafting never fails for lack of configuration.
"""

import logging

from src.core.exceptions import EmailDraftError
from src.core.llm import LLMClient
from src.models.follow_up import DraftRequest, DraftResult, FollowUpTone

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v1"
TEMPLATE_MODEL = "template"
CONTEXT_CHAR_LIMIT = 600

TONE_DESCRIPTIONS: dict[str, str] = {
    FollowUpTone.FRIENDLY.value: "friendly and warm",
    FollowUpTone.URGENT.value: "concise and urgent",
    FollowUpTone.FORMAL.value: "professional and succinct",
}

SYSTEM_PROMPT = (
    "You help busy professionals follow up on email threads with concise, "
    "courteous reminders."
)


def trim_content(text: str, limit: int = CONTEXT_CHAR_LIMIT) -> str:
    """Collapse whitespace and cut to ``limit`` characters."""
    collapsed = " ".join((text or "").split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 1].rstrip() + "…"


def reply_subject(subject: str | None) -> str:
    """The thread subject in reply form."""
    subject = (subject or "").strip()
    if not subject:
        return "Quick follow-up"
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


def template_body(counterpart_name: str, sender_name: str) -> str:
    """Deterministic follow-up body used without an LLM."""
    return "\n".join(
        [
            f"Hi {counterpart_name or 'there'},",
            "",
            "Just checking in on this. Let me know if you need anything else from me.",
            "",
            "Thanks,",
            sender_name or "Thanks",
        ]
    )


class FollowUpDraftGenerator:
    """Drafts subject/body/tone for a follow-up."""

    def __init__(self, llm: LLMClient | None = None) -> None:
        self._llm = llm if llm is not None else LLMClient()

    @property
    def model_name(self) -> str:
        """Identifier recorded with drafts this generator produces."""
        return self._llm.model if self._llm.is_configured else TEMPLATE_MODEL

    async def generate(self, request: DraftRequest) -> DraftResult:
        """Draft a follow-up email.

        Raises:
            EmailDraftError: If the configured LLM call fails.
        """
        tone = request.tone if request.tone in TONE_DESCRIPTIONS else FollowUpTone.FRIENDLY.value
        subject = reply_subject(request.subject)

        if not self._llm.is_configured:
            return DraftResult(
                subject=subject,
                body=template_body(request.counterpart_name, request.sender_name),
                tone=tone,
                model=TEMPLATE_MODEL,
                prompt_version=PROMPT_VERSION,
            )

        prompt = f"""You are an executive assistant drafting a follow-up email.
Tone should be {TONE_DESCRIPTIONS[tone]}. The email should be short (2-3 paragraphs), polite, and make it easy for the recipient to respond.

Details:
- Sender name: {request.sender_name or 'Unknown'}
- Recipient name: {request.counterpart_name or 'Unknown'}
- Days since last message: {request.idle_days}
- Thread subject: {request.subject or 'N/A'}

Latest context:
{trim_content(request.context_summary) or 'No additional context'}

Draft a follow-up email body only (no subject line). Keep it under 150 words."""

        try:
            response = await self._llm.generate_response(
                messages=[{"role": "user", "content": prompt}],
                system_prompt=SYSTEM_PROMPT,
                temperature=0.4,
                max_tokens=280,
            )
        except Exception as e:
            logger.error("Follow-up draft generation failed: %s", e, exc_info=True)
            raise EmailDraftError(str(e), details={"subject": subject}) from e

        body = (response or "").strip()
        if not body:
            logger.warning("LLM returned an empty follow-up draft; using short template")
            body = f"Hi {request.counterpart_name or 'there'},\n\nJust checking in.\n\nThanks,\n{request.sender_name}".strip()

        return DraftResult(
            subject=subject,
            body=body,
            tone=tone,
            model=self._llm.model,
            prompt_version=PROMPT_VERSION,
        )
