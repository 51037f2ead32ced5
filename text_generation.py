from __future__ import annotations

import json
import logging
from typing import Any, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from config import Settings, get_settings

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (
    google_exceptions.GoogleAPIError,
    ConnectionError,
    TimeoutError,
)


class GenerationServiceError(RuntimeError):
    pass


class GeminiTextGenerator:
    """Client for the review text service.

    Built once at process start and handed to whoever needs it; nothing here
    is module-global apart from the SDK's own key configuration.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.model_name = self.settings.gemini_model
        self.timeout = self.settings.generation_timeout_secs
        self._model: Optional[genai.GenerativeModel] = None
        if self.settings.gemini_api_key:
            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(
                model_name=self.model_name,
                generation_config={"temperature": 0.7, "max_output_tokens": 2048},
            )

    def check_available(self) -> None:
        if self._model is None:
            raise GenerationServiceError("Text generation API key is not configured")
        try:
            genai.get_model(
                f"models/{self.model_name}", request_options={"timeout": self.timeout}
            )
        except _TRANSPORT_ERRORS as exc:
            logger.warning(f"text_generation_preflight_failed: model={self.model_name}")
            raise GenerationServiceError(
                "Text generation service is unreachable"
            ) from exc

    def generate(self, prompt: str) -> str:
        if self._model is None:
            raise GenerationServiceError("Text generation API key is not configured")
        try:
            response = self._model.generate_content(
                prompt, request_options={"timeout": self.timeout}
            )
        except _TRANSPORT_ERRORS as exc:
            raise GenerationServiceError("Text generation request failed") from exc

        try:
            text = response.text
        except ValueError as exc:
            # Raised by the SDK when the candidate was blocked or is empty.
            raise GenerationServiceError("Text generation returned no content") from exc
        if not text or not text.strip():
            raise GenerationServiceError("Text generation returned no content")
        return text


_TONE = (
    "You are a friendly financial advisor reviewing a user's month in a "
    "personal finance app. Write in a warm, encouraging and informal tone. "
    'Address the user as "{name}".'
)

_FIRST_MONTH_POINTS = """Important points:
- Congratulate the user on starting to track their finances
- Analyse the first month's figures in a positive way
- Offer motivating suggestions for the coming months
- Guide them towards budgeting and setting savings goals
- Keep the tone positive and encouraging throughout"""

_COMPARISON_POINTS = """Important points:
- Gently analyse how income and expenses changed since last month
- Explain changes in the saving rate in an encouraging way
- Be motivating about their savings goals
- Phrase advice softly ("you could try", "maybe consider")
- Keep the tone positive and encouraging throughout"""


def is_first_month(previous: Optional[dict[str, Any]]) -> bool:
    return not previous or int(previous.get("transaction_count", 0) or 0) == 0


def build_review_prompt(
    current: dict[str, Any],
    previous: Optional[dict[str, Any]],
    user_name: str,
) -> str:
    tone = _TONE.format(name=user_name)
    if is_first_month(previous):
        return (
            f"{tone}\n"
            "This is the user's first month using the app. Write the analysis "
            "like a friendly welcome message and highlight the positives.\n\n"
            f"{_FIRST_MONTH_POINTS}\n\n"
            f"Data:\n{json.dumps(current, indent=2, default=str)}"
        )
    payload = {"current_month": current, "previous_month": previous}
    return (
        f"{tone}\n"
        "Using the data below, write the analysis like a friendly letter of "
        "advice. Highlight what went well and kindly point out areas to "
        "improve.\n\n"
        f"{_COMPARISON_POINTS}\n\n"
        f"Data:\n{json.dumps(payload, indent=2, default=str)}"
    )
