"""Tests for AI prompts and the Claude-backed classifier."""

from unittest.mock import Mock

from visreg.ai.prompts.classification import (
    CLASSIFICATION_SYSTEM_PROMPT,
    LOGIN_FLOW_SYSTEM_PROMPT,
    MAX_LOGIN_PAGE_CHARS,
    build_classification_prompt,
    build_login_flow_prompt,
)
from visreg.classifier.ai_classifier import AIChangeClassifier


class TestClassificationPrompt:
    """Tests for the classification prompt."""

    def test_system_prompt_requires_json(self):
        assert "JSON" in CLASSIFICATION_SYSTEM_PROMPT
        assert "provided route list" in CLASSIFICATION_SYSTEM_PROMPT

    def test_prompt_lists_files_routes_and_diff(self):
        """Test the prompt carries every input the model needs."""
        prompt = build_classification_prompt(
            diff="+<h1>Hello</h1>",
            changed_files=["src/lib/Header.svelte"],
            known_routes=[
                {"path": "/", "auth_protected": False, "dynamic": False, "touched": True},
                {"path": "/portal", "auth_protected": True, "dynamic": False, "touched": False},
            ],
        )

        assert "- src/lib/Header.svelte" in prompt
        assert "- / (public, source changed)" in prompt
        assert "- /portal (auth required)" in prompt
        assert "+<h1>Hello</h1>" in prompt
        assert '"routesToTest"' in prompt
        assert "Project Context" not in prompt
        assert "truncated" not in prompt

    def test_prompt_includes_context_and_truncation_note(self):
        prompt = build_classification_prompt(
            diff="x", changed_files=[], known_routes=[],
            project_context="SvelteKit storefront", truncated=True,
        )

        assert "## Project Context\nSvelteKit storefront" in prompt
        assert "Diff truncated" in prompt
        assert "## Changed Files\n(none)" in prompt


class TestLoginFlowPrompt:
    """Tests for the login flow prompt."""

    def test_system_prompt_prefers_test_ids(self):
        assert "data-testid" in LOGIN_FLOW_SYSTEM_PROMPT

    def test_login_page_truncated(self):
        prompt = build_login_flow_prompt("a" * (MAX_LOGIN_PAGE_CHARS + 500))
        assert "a" * MAX_LOGIN_PAGE_CHARS in prompt
        assert "a" * (MAX_LOGIN_PAGE_CHARS + 1) not in prompt
        assert "Layout Content" not in prompt

    def test_layout_included_when_given(self):
        prompt = build_login_flow_prompt("<form/>", layout_content="<nav/>")
        assert "## Layout Content" in prompt
        assert "<nav/>" in prompt


class TestAIChangeClassifier:
    """Tests for AIChangeClassifier."""

    def test_infer_visual_impact_calls_complete_json(self):
        ai_client = Mock()
        ai_client.complete_json.return_value = {"changes": []}
        classifier = AIChangeClassifier(ai_client)

        result = classifier.infer_visual_impact("diff", ["a.ts"], [], project_context="ctx")

        assert result == {"changes": []}
        system, prompt = ai_client.complete_json.call_args.args
        assert system == CLASSIFICATION_SYSTEM_PROMPT
        assert "- a.ts" in prompt
        assert "ctx" in prompt

    def test_infer_login_flow_uses_login_prompt(self):
        ai_client = Mock()
        ai_client.complete_json.return_value = {"loginUrl": "/login"}
        classifier = AIChangeClassifier(ai_client)

        assert classifier.infer_login_flow("<form/>") == {"loginUrl": "/login"}
        assert ai_client.complete_json.call_args.args[0] == LOGIN_FLOW_SYSTEM_PROMPT
