"""
Prompt Service - builds the system prompt and the report request.

Prompt wording lives here so the gateway and relay never touch it.
"""

import logging
from datetime import date
from typing import Optional

from siftstream.core.config import settings
from siftstream.core.enums import ReportType
from siftstream.core.security import sanitize_for_llm

logger = logging.getLogger(__name__)


class PromptService:
    """
    Generates the SIFT system prompt and per-report instructions.

    SIFT: Stop, Investigate the source, Find better coverage, Trace claims.
    """

    def __init__(self):
        self._system_template = """You are a fact-checking assistant using the SIFT method.

**TODAY'S DATE: {current_date}**

For every claim, image or artifact the user shares:
1. Stop: note what is being claimed and what you do not yet know.
2. Investigate the source: who produced it and what their track record is.
3. Find better coverage: what trusted reporting says about the same claim.
4. Trace claims: follow quotes, media and data back to their original context.

Be explicit about uncertainty. Use markdown headers, lists and tables.
Answer follow-up questions in the context of the analysis already given.
"""

        self._report_templates = {
            ReportType.FULL_CHECK: (
                "Produce a full SIFT check. Include sections: Claim summary, "
                "Source investigation, Better coverage, Claim tracing, Verdict, "
                "and Sources to consult."
            ),
            ReportType.CONTEXT_REPORT: (
                "Produce a short context report: what the artifact is, where it "
                "came from, and what context a reader needs before sharing it."
            ),
            ReportType.COMMUNITY_NOTE: (
                "Write a community note of at most 280 words that a platform "
                "could attach to this content, followed by the sources it relies on."
            ),
        }

    def get_system_prompt(self, override: Optional[str] = None) -> str:
        """Return the system prompt, or the caller's override when one is given."""
        if override and override.strip():
            return override.strip()
        return self._system_template.format(current_date=date.today().isoformat())

    def build_report_request(
        self,
        report_type: ReportType,
        user_input_text: Optional[str],
        has_image: bool,
    ) -> str:
        """Build the user turn that asks for the initial report."""
        instruction = self._report_templates[report_type]
        parts = [f"Report type: {report_type.value}", instruction]

        text = sanitize_for_llm(user_input_text or "", max_length=settings.max_input_length)
        if text:
            parts.append(f"Content to analyze:\n{text}")
        if has_image:
            parts.append("An image is attached. Analyze the image itself and any text it contains.")

        return "\n\n".join(parts)


# Global prompt service instance
prompt_service = PromptService()
