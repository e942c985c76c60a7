"""Tests for AI client."""

import os
from pathlib import Path
from unittest.mock import Mock, patch

import anthropic
import httpx
import pytest

from visreg.ai.client import AIClient, _get_debug_dir, set_debug_dir

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _status_error(cls, status: int):
    return cls(message=f"status {status}", response=httpx.Response(status, request=_REQUEST), body=None)


def _response(text: str, stop_reason: str = "end_turn") -> Mock:
    content = Mock()
    content.text = text
    response = Mock()
    response.content = [content]
    response.stop_reason = stop_reason
    return response


def _client(mock_anthropic_class, side_effect=None, return_value=None, **kwargs) -> AIClient:
    mock_client = Mock()
    if side_effect is not None:
        mock_client.messages.create.side_effect = side_effect
    else:
        mock_client.messages.create.return_value = return_value
    mock_anthropic_class.return_value = mock_client
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "test-key"}):
        client = AIClient(**kwargs)
    client._save_exchange_log = Mock()
    return client


class TestAIClient:
    """Tests for AIClient class."""

    def test_init_requires_api_key(self):
        """Test AIClient raises error when API key is missing."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(EnvironmentError, match="ANTHROPIC_API_KEY"):
                AIClient()

    @patch("anthropic.Anthropic")
    def test_init_disables_sdk_retries(self, mock_anthropic):
        """Test AIClient owns the retry loop instead of the SDK."""
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "test-key"}):
            client = AIClient(max_tokens=2000)
        assert client.max_tokens == 2000
        assert client.call_count == 0
        assert mock_anthropic.call_args.kwargs["max_retries"] == 0

    @patch("anthropic.Anthropic")
    def test_complete_success(self, mock_anthropic_class):
        """Test successful completion request."""
        client = _client(mock_anthropic_class, return_value=_response("AI response text"))

        assert client.complete("system", "hello") == "AI response text"
        assert client.call_count == 1
        kwargs = client.client.messages.create.call_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["messages"] == [{"role": "user", "content": "hello"}]

    @patch("anthropic.Anthropic")
    @patch("visreg.ai.client.time.sleep")
    def test_rate_limit_retried_with_backoff(self, mock_sleep, mock_anthropic_class):
        """Test 429 responses are retried with exponential backoff."""
        client = _client(
            mock_anthropic_class,
            side_effect=[
                _status_error(anthropic.RateLimitError, 429),
                _status_error(anthropic.InternalServerError, 503),
                _response("ok"),
            ],
            retry_delay=0.5,
        )

        assert client.complete("system", "hello") == "ok"
        assert client.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]

    @patch("anthropic.Anthropic")
    @patch("visreg.ai.client.time.sleep")
    def test_connection_error_retried(self, mock_sleep, mock_anthropic_class):
        client = _client(
            mock_anthropic_class,
            side_effect=[anthropic.APIConnectionError(request=_REQUEST), _response("ok")],
        )

        assert client.complete("system", "hello") == "ok"
        assert mock_sleep.call_count == 1

    @patch("anthropic.Anthropic")
    @patch("visreg.ai.client.time.sleep")
    def test_client_error_not_retried(self, mock_sleep, mock_anthropic_class):
        """Test 4xx errors other than rate limits fail immediately."""
        client = _client(mock_anthropic_class, side_effect=_status_error(anthropic.BadRequestError, 400))

        with pytest.raises(anthropic.BadRequestError):
            client.complete("system", "hello")
        assert client.call_count == 1
        mock_sleep.assert_not_called()

    @patch("anthropic.Anthropic")
    @patch("visreg.ai.client.time.sleep")
    def test_gives_up_after_max_retries(self, mock_sleep, mock_anthropic_class):
        """Test exhausting retries raises with the last error."""
        client = _client(
            mock_anthropic_class,
            side_effect=_status_error(anthropic.InternalServerError, 500),
            max_retries=3,
        )

        with pytest.raises(RuntimeError, match="after 3 attempts"):
            client.complete("system", "hello")
        assert client.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("anthropic.Anthropic")
    @patch("visreg.ai.client.time.sleep")
    def test_empty_response_retried(self, mock_sleep, mock_anthropic_class):
        client = _client(mock_anthropic_class, side_effect=[_response(""), _response("filled")])

        assert client.complete("system", "hello") == "filled"

    @patch("anthropic.Anthropic")
    @patch("visreg.ai.client.logger")
    def test_complete_warns_on_truncation(self, mock_logger, mock_anthropic_class):
        """Test a max_tokens stop reason is logged as a warning."""
        client = _client(mock_anthropic_class, return_value=_response("{}", stop_reason="max_tokens"))

        client.complete("system", "hello")
        assert any("truncated" in str(c) for c in mock_logger.warning.call_args_list)


class TestJsonParsing:
    """Tests for complete_json and its LLM quirk handling."""

    @patch("anthropic.Anthropic")
    def test_complete_json_parses_valid_response(self, mock_anthropic_class):
        client = _client(mock_anthropic_class, return_value=_response('{"routesToTest": []}'))
        assert client.complete_json("system", "hello") == {"routesToTest": []}

    def test_strips_markdown_fences(self):
        text = '```json\n{"confidence": 0.9}\n```'
        assert AIClient._parse_json_response(text) == {"confidence": 0.9}

    def test_tolerates_trailing_commas_and_comments(self):
        text = '{\n  "changes": [1, 2,],\n  // model commentary\n  "reasoning": "x",\n}'
        assert AIClient._parse_json_response(text) == {"changes": [1, 2], "reasoning": "x"}

    def test_extracts_object_from_prose(self):
        text = 'Here is the analysis:\n{"confidence": 1}\nHope this helps.'
        assert AIClient._parse_json_response(text) == {"confidence": 1}

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError, match="invalid JSON"):
            AIClient._parse_json_response("no json here")


class TestDebugDir:
    """Tests for the AI exchange debug directory."""

    def test_set_debug_dir_creates_directory(self, tmp_path: Path):
        debug_dir = tmp_path / "debug"
        set_debug_dir(debug_dir)
        assert debug_dir.is_dir()
        assert _get_debug_dir() == debug_dir

    @patch("anthropic.Anthropic")
    def test_exchange_logged(self, mock_anthropic_class, tmp_path: Path):
        """Test each exchange is written to the debug directory."""
        set_debug_dir(tmp_path / "debug")
        mock_client = Mock()
        mock_client.messages.create.return_value = _response("answer")
        mock_anthropic_class.return_value = mock_client
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "test-key"}):
            client = AIClient()

        client.complete("system prompt", "user message")

        logs = list((tmp_path / "debug").glob("ai_call_*.log"))
        assert len(logs) == 1
        content = logs[0].read_text()
        assert "system prompt" in content
        assert "answer" in content
