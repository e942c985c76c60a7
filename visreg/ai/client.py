"""Claude API client wrapper used for change classification."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Optional

import anthropic

logger = logging.getLogger(__name__)

# Configurable debug directory, set by the orchestrator at startup
_debug_dir: Path | None = None

# Status codes worth retrying; other 4xx responses are caller errors
_RETRYABLE_STATUS = {408, 409, 429}


def set_debug_dir(path: Path) -> None:
    """Set the directory for dumping AI exchanges."""
    global _debug_dir
    _debug_dir = path
    _debug_dir.mkdir(parents=True, exist_ok=True)


def _get_debug_dir() -> Path:
    global _debug_dir
    if _debug_dir is None:
        _debug_dir = Path(".visreg") / "debug"
    _debug_dir.mkdir(parents=True, exist_ok=True)
    return _debug_dir


class AIClient:
    """Wrapper around the Anthropic Claude API with retry on transient failures."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4000,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise EnvironmentError(
                "ANTHROPIC_API_KEY environment variable is not set. "
                "Please set it before running a classification."
            )
        # SDK-level retries are disabled; backoff is handled in complete()
        self.client = anthropic.Anthropic(api_key=api_key, timeout=300.0, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    def complete(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.3,
    ) -> str:
        """Send a completion request to Claude and return the text response.

        Rate limits, timeouts, connection errors and 5xx responses are retried
        with exponential backoff. Other API errors are raised immediately.
        """
        tokens = max_tokens or self.max_tokens
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            self._call_count += 1
            logger.info(
                "Calling AI (call #%d, attempt %d/%d, model=%s, max_tokens=%d)...",
                self._call_count, attempt, self.max_retries, self.model, tokens,
            )
            logger.debug("AI prompt length: system=%d chars, user=%d chars",
                         len(system_prompt), len(user_message))
            try:
                call_start = time.time()
                response = self.client.messages.create(
                    model=self.model,
                    max_tokens=tokens,
                    temperature=temperature,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_message}],
                )
                text = response.content[0].text if response.content else ""
                if not text:
                    raise ValueError("Empty response from Claude")
                logger.info("AI response received in %.1fs (%d chars)",
                            time.time() - call_start, len(text))

                if response.stop_reason == "max_tokens":
                    logger.warning(
                        "AI response was truncated at max_tokens=%d; "
                        "consider raising ai_max_tokens in config.", tokens,
                    )

                self._save_exchange_log(self._call_count, system_prompt, user_message, text, None)
                return text
            except anthropic.APIStatusError as e:
                last_error = e
                self._save_exchange_log(self._call_count, system_prompt, user_message, "", str(e))
                if e.status_code < 500 and e.status_code not in _RETRYABLE_STATUS:
                    logger.error("Claude API error (not retried): %s", e)
                    raise
                logger.warning("Claude API error (status %s): %s", e.status_code, e)
            except (anthropic.APIConnectionError, ValueError) as e:
                last_error = e
                self._save_exchange_log(self._call_count, system_prompt, user_message, "", str(e))
                logger.warning("Claude request failed: %s", e)

            if attempt < self.max_retries:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning("Retrying AI request in %.1fs (attempt %d/%d)",
                               delay, attempt, self.max_retries)
                time.sleep(delay)

        raise RuntimeError(
            f"AI request failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    def complete_json(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
    ) -> dict[str, Any]:
        """Send a completion request and parse the response as JSON."""
        text = self.complete(system_prompt, user_message, max_tokens, temperature)
        return self._parse_json_response(text)

    # ------------------------------------------------------------------
    # JSON parsing with LLM quirk handling
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_json_response(text: str) -> dict[str, Any]:
        """Parse AI response as JSON, handling common LLM output quirks."""
        text = text.strip()

        fence_pattern = re.compile(
            r'^```(?:json|javascript|)?\s*\n(.*?)\n```\s*$',
            re.DOTALL | re.MULTILINE,
        )
        match = fence_pattern.search(text)
        if match:
            text = match.group(1).strip()
            logger.debug("Stripped markdown code fences from AI response")

        try:
            return json.loads(text, strict=False)
        except json.JSONDecodeError:
            pass

        cleaned = text
        # Trailing commas and // comments are the usual offenders
        cleaned = re.sub(r'(?<=[\s,\]\}])//[^\n]*', '', cleaned)
        cleaned = re.sub(r'^//[^\n]*', '', cleaned, flags=re.MULTILINE)
        cleaned = re.sub(r',\s*([}\]])', r'\1', cleaned)

        first_brace = cleaned.find('{')
        last_brace = cleaned.rfind('}')
        if first_brace != -1 and last_brace > first_brace:
            cleaned = cleaned[first_brace:last_brace + 1]

        try:
            return json.loads(cleaned, strict=False)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse AI response as JSON: %s", e)
            logger.debug("Raw response (first 2000 chars):\n%s", text[:2000])
            raise ValueError(f"AI returned invalid JSON: {e}") from e

    # ------------------------------------------------------------------
    # Debug logging
    # ------------------------------------------------------------------

    @staticmethod
    def _save_exchange_log(
        call_number: int,
        system_prompt: str,
        user_message: str,
        response_text: str,
        error: str | None,
    ) -> None:
        """Save the full AI exchange (prompt + response) to a log file."""
        try:
            debug_dir = _get_debug_dir()
            ts = time.strftime("%Y%m%d_%H%M%S")
            log_file = debug_dir / f"ai_call_{ts}_{call_number:03d}.log"

            with open(log_file, "w", encoding="utf-8") as f:
                f.write(f"=== AI CALL #{call_number} at {time.strftime('%Y-%m-%d %H:%M:%S')} ===\n\n")
                f.write(f"=== SYSTEM PROMPT ({len(system_prompt)} chars) ===\n")
                f.write(system_prompt)
                f.write(f"\n\n=== USER MESSAGE ({len(user_message)} chars) ===\n")
                f.write(user_message)
                f.write(f"\n\n=== RESPONSE ({len(response_text)} chars) ===\n")
                f.write(response_text if response_text else "(empty)")
                if error:
                    f.write(f"\n\n=== ERROR ===\n{error}\n")

            logger.debug("AI exchange logged to %s", log_file)
        except OSError as log_err:
            logger.debug("Failed to save AI exchange log: %s", log_err)
