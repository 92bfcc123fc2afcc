"""LLM inference for bill/invoice email classification."""

import json
import logging
import re
from typing import Optional

from openai import OpenAI, OpenAIError

from ..models import ParsedEmail, EmailClassification

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an email classifier that decides if an email is a legitimate bill/invoice "
    "we should ingest into an accounting system. Use only sender, recipient, subject and "
    "the optional snippet. Reply ONLY with a strict JSON object of the form "
    '{"is_invoice": boolean, "confidence": number between 0 and 1}. Be conservative.'
)

# Body text is only sent when the subject alone says too little
SHORT_SUBJECT_LEN = 8
SNIPPET_LEN = 240


class InferenceClient:
    """Client for LLM inference using an OpenAI-compatible API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """Initialize inference client.

        Args:
            api_key: API key for the endpoint
            model_name: Model name to use for inference
            base_url: Override for OpenAI-compatible endpoints (e.g., vLLM)
            timeout: Request timeout in seconds
        """
        self.client = OpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            timeout=timeout,
        )
        self.model_name = model_name
        logger.info(f"Inference client initialized with model: {model_name}")

    @staticmethod
    def build_prompt(parsed_email: ParsedEmail) -> str:
        subject = parsed_email.subject or ""
        snippet = ""
        if len(subject) < SHORT_SUBJECT_LEN:
            snippet = (parsed_email.body_text or "")[:SNIPPET_LEN]

        return f"""from: {parsed_email.from_address}
to: {parsed_email.to_address or ""}
subject: {subject}
snippet: {snippet}"""

    def classify_email(self, parsed_email: ParsedEmail) -> EmailClassification:
        """Classify whether an email is a bill worth ingesting.

        Never raises: on API or parse failure the email is classified as
        not-an-invoice with zero confidence.

        Args:
            parsed_email: Parsed email object

        Returns:
            EmailClassification: Classification result
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_prompt(parsed_email)},
                ],
                temperature=0,
                max_tokens=128,
            )

            response_text = (response.choices[0].message.content or "").strip()
            cleaned = self._extract_json(response_text)
            data = json.loads(cleaned)
            if not isinstance(data, dict):
                raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

            return EmailClassification(
                is_invoice=bool(data.get("is_invoice")),
                confidence=data.get("confidence", 0),
                reasoning=data.get("reasoning"),
            )

        except (OpenAIError, ValueError, TypeError, IndexError, AttributeError) as e:
            logger.error(f"Classification failed: {e}")
            return EmailClassification(
                is_invoice=False,
                confidence=0.0,
                reasoning=f"Classification failed: {e}",
            )

    def _extract_json(self, text: str) -> str:
        """Extract JSON from text that may contain markdown code blocks or thinking tags.

        Args:
            text: Response text that may contain JSON

        Returns:
            str: Cleaned JSON string
        """
        # Remove thinking tags if present
        if '<think>' in text or '</think>' in text:
            text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL)
            text = text.strip()

        # Handle markdown code blocks
        if '```' in text:
            json_match = re.search(r'```(?:json)?\s*(\{.*?\})\s*```', text, re.DOTALL)
            if json_match:
                return json_match.group(1)

        # Find the JSON object if it doesn't start with {
        if not text.startswith('{'):
            json_match = re.search(r'\{.*\}', text, re.DOTALL)
            if json_match:
                return json_match.group(0)

        return text
