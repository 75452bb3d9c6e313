"""Short thread titles from the first exchange."""

from __future__ import annotations

import logging

from threadline.rag.llm_client import ProviderCredentials, acomplete

logger = logging.getLogger(__name__)

_TITLE_PROMPT = (
    "Write a title of at most six words for a conversation that starts with "
    "the exchange below. Reply with the title only, no quotes or punctuation "
    "at the end.\n\nUser: {user}\n\nAssistant: {assistant}"
)

MAX_TITLE_CHARS = 80
_EXCERPT_CHARS = 1000


class TitleGenerator:
    """Best-effort title generation; ``generate`` never raises for provider errors.

    Args:
        model: LiteLLM model string (``provider/model``).
        timeout: Seconds allowed for the call.
        credentials: Optional per-call credentials.
    """

    def __init__(
        self,
        model: str,
        timeout: float = 30.0,
        credentials: ProviderCredentials | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.credentials = credentials

    async def generate(self, user_text: str, assistant_text: str) -> str | None:
        prompt = _TITLE_PROMPT.format(
            user=user_text[:_EXCERPT_CHARS], assistant=assistant_text[:_EXCERPT_CHARS]
        )
        try:
            raw = await acomplete(
                self.model,
                [{"role": "user", "content": prompt}],
                max_tokens=24,
                temperature=0.3,
                timeout=self.timeout,
                credentials=self.credentials,
            )
        except Exception as exc:  # titles are optional
            logger.warning("Title generation failed: %s", exc)
            return None
        return clean_title(raw)


def clean_title(raw: str) -> str | None:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'`*#").strip().rstrip(".")
    if not title:
        return None
    return title[:MAX_TITLE_CHARS]
