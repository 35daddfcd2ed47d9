"""Last-resort ticker inference with Claude.

Only used by the retry worker after the market-data providers came back
empty. The answer is accepted only if it is ticker-shaped; nothing checks
that the ticker exists, so mappings from here are tagged
``source="inference"`` and should be trusted less than provider results.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from .. import config
from ..errors import ResolutionError
from .identifiers import normalize_ticker

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You map US security identifiers to exchange ticker symbols. "
    "Answer with the ticker symbol only, or UNKNOWN."
)


def ticker_prompt(cusip: str) -> str:
    return (
        f"What is the current stock ticker symbol for CUSIP {cusip}? "
        "Respond with only the ticker symbol, nothing else. "
        "If you are not sure, respond with UNKNOWN."
    )


def parse_ticker_response(text: Optional[str], cusip: str) -> Optional[str]:
    """Accept the reply only if it looks like a ticker."""
    return normalize_ticker(text, identifier=cusip)


class AnthropicInference:
    """Text-inference provider: ``complete(prompt) -> str``."""

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = config.INFERENCE_MODEL,
        max_tokens: int = 20,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("ANTHROPIC_API_KEY")
        self.model = model
        self.max_tokens = max_tokens
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise ResolutionError("No ANTHROPIC_API_KEY configured for ticker inference")
        try:
            message = self._get_client().messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
            # Empty or non-text replies count as no answer
            parts = [getattr(block, "text", None) for block in (message.content or [])]
            text = "".join(p for p in parts if isinstance(p, str))
        except Exception as e:
            raise ResolutionError(f"Inference call failed: {e}") from e
        return text.strip()

    def infer_ticker(self, cusip: str) -> Optional[str]:
        text = self.complete(ticker_prompt(cusip))
        if not text:
            logger.info("[CUSIP] Inference returned an empty reply for %s", cusip)
            return None
        ticker = parse_ticker_response(text, cusip)
        if ticker is None:
            logger.info("[CUSIP] Inference gave no usable ticker for %s (%r)", cusip, text[:40])
        return ticker
