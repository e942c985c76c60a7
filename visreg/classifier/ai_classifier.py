"""Claude-backed change classification capability."""

from __future__ import annotations

import logging
from typing import Any

from visreg.ai.client import AIClient
from visreg.ai.prompts.classification import (
    CLASSIFICATION_SYSTEM_PROMPT,
    LOGIN_FLOW_SYSTEM_PROMPT,
    build_classification_prompt,
    build_login_flow_prompt,
)

logger = logging.getLogger(__name__)


class AIChangeClassifier:
    """Asks Claude which known routes a diff visually affects."""

    def __init__(self, ai_client: AIClient):
        self.ai_client = ai_client

    def infer_visual_impact(
        self,
        diff_text: str,
        changed_files: list[str],
        known_routes: list[dict],
        project_context: str | None = None,
        truncated: bool = False,
    ) -> dict[str, Any]:
        logger.info("Classifying %d changed files against %d routes with Claude...",
                    len(changed_files), len(known_routes))
        prompt = build_classification_prompt(
            diff_text, changed_files, known_routes,
            project_context=project_context, truncated=truncated,
        )
        return self.ai_client.complete_json(CLASSIFICATION_SYSTEM_PROMPT, prompt)

    def infer_login_flow(
        self,
        login_page_content: str,
        layout_content: str | None = None,
    ) -> dict[str, Any]:
        logger.info("Inferring login flow with Claude...")
        prompt = build_login_flow_prompt(login_page_content, layout_content)
        return self.ai_client.complete_json(LOGIN_FLOW_SYSTEM_PROMPT, prompt)
