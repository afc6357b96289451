"""Tests for the summary model client."""

from unittest.mock import MagicMock, patch

import pytest

from wtf_cli.config import DEFAULT_MODEL
from wtf_cli.model import ErrorKind, ModelError, PromptPayload, SummaryClient
from wtf_cli.prompts import COMMIT_SYSTEM_PROMPT, PROJECT_SYSTEM_PROMPT, Task


def _response(status=200, body=None, text="", headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.headers = headers or {}
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


def _ok(content="A plain explanation."):
    return _response(body={"choices": [{"message": {"role": "assistant", "content": content}}]})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return SummaryClient(api_key="sk-test-key-123456", sleep=sleeps.append)


@pytest.fixture
def payload():
    return PromptPayload(Task.COMMIT_EXPLANATION, "abc123", "Commit: abc123\nDIFF:\n+x")


class TestSummaryClient:
    """Test SummaryClient requests and response parsing."""

    def test_default_config(self, client):
        assert client.model == DEFAULT_MODEL
        assert client.base_url == "https://api.openai.com/v1"
        assert client.max_attempts == 3

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            SummaryClient(api_key="")

    @patch("httpx.Client.post")
    def test_summarize_success(self, mock_post, client, payload):
        mock_post.return_value = _ok("  Adds a greeting helper.  ")
        result = client.summarize(payload)
        assert result.subject_ref == "abc123"
        assert result.text == "Adds a greeting helper."
        assert result.truncated is False

        url = mock_post.call_args.args[0]
        body = mock_post.call_args.kwargs["json"]
        assert url.endswith("/chat/completions")
        assert body["model"] == DEFAULT_MODEL
        assert body["messages"][0] == {"role": "system", "content": COMMIT_SYSTEM_PROMPT}
        assert body["messages"][1]["content"] == payload.content

    @patch("httpx.Client.post")
    def test_system_prompt_follows_task(self, mock_post, client):
        mock_post.return_value = _ok()
        client.summarize(PromptPayload(Task.PROJECT_DESCRIPTION, "project", "README"))
        body = mock_post.call_args.kwargs["json"]
        assert body["messages"][0]["content"] == PROJECT_SYSTEM_PROMPT

    def test_bearer_header(self, client):
        assert client._client.headers["Authorization"] == "Bearer sk-test-key-123456"


class TestErrorClassification:
    """Test mapping of failures to ErrorKind."""

    @pytest.mark.parametrize(
        "status,kind",
        [
            (401, ErrorKind.AUTH),
            (403, ErrorKind.AUTH),
            (400, ErrorKind.INVALID_REQUEST),
            (404, ErrorKind.INVALID_REQUEST),
            (429, ErrorKind.RATE_LIMITED),
            (500, ErrorKind.NETWORK),
            (503, ErrorKind.NETWORK),
        ],
    )
    @patch("httpx.Client.post")
    def test_status_codes(self, mock_post, client, status, kind):
        mock_post.return_value = _response(status, text="nope")
        with pytest.raises(ModelError) as excinfo:
            client.complete("system", "prompt")
        assert excinfo.value.kind == kind
        assert str(status) in str(excinfo.value)

    @patch("httpx.Client.post")
    def test_timeout_is_network(self, mock_post, client):
        from httpx import TimeoutException

        mock_post.side_effect = TimeoutException("timed out")
        with pytest.raises(ModelError, match="timed out") as excinfo:
            client.complete("system", "prompt")
        assert excinfo.value.kind == ErrorKind.NETWORK

    @patch("httpx.Client.post")
    def test_connect_error_is_network(self, mock_post, client):
        from httpx import ConnectError

        mock_post.side_effect = ConnectError("connection refused")
        with pytest.raises(ModelError) as excinfo:
            client.complete("system", "prompt")
        assert excinfo.value.kind == ErrorKind.NETWORK

    @patch("httpx.Client.post")
    def test_invalid_json(self, mock_post, client):
        import json

        mock_post.return_value = _response(body=json.JSONDecodeError("bad", "doc", 0), text="<html>")
        with pytest.raises(ModelError, match="invalid JSON") as excinfo:
            client.complete("system", "prompt")
        assert excinfo.value.kind == ErrorKind.INVALID_RESPONSE

    @pytest.mark.parametrize("body", [{}, {"choices": []}, {"choices": [{"message": {}}]}, {"choices": [{"message": {"content": None}}]}])
    @patch("httpx.Client.post")
    def test_missing_choices(self, mock_post, client, body):
        mock_post.return_value = _response(body=body)
        with pytest.raises(ModelError) as excinfo:
            client.complete("system", "prompt")
        assert excinfo.value.kind == ErrorKind.INVALID_RESPONSE


class TestRetryPolicy:
    """Test retry and backoff behavior."""

    @patch("httpx.Client.post")
    def test_rate_limited_retried_exactly_max_attempts(self, mock_post, client, payload, sleeps):
        mock_post.return_value = _response(429, text="slow down")
        with pytest.raises(ModelError) as excinfo:
            client.summarize(payload)
        assert mock_post.call_count == 3
        assert excinfo.value.kind == ErrorKind.RATE_LIMITED
        assert excinfo.value.attempts == 3
        assert len(sleeps) == 2

    @patch("httpx.Client.post")
    def test_custom_max_attempts(self, mock_post, payload, sleeps):
        client = SummaryClient(api_key="sk-test", max_attempts=5, sleep=sleeps.append)
        mock_post.return_value = _response(503, text="unavailable")
        with pytest.raises(ModelError):
            client.summarize(payload)
        assert mock_post.call_count == 5

    @patch("httpx.Client.post")
    def test_auth_never_retried(self, mock_post, client, payload, sleeps):
        mock_post.return_value = _response(401, text="bad key")
        with pytest.raises(ModelError) as excinfo:
            client.summarize(payload)
        assert mock_post.call_count == 1
        assert excinfo.value.attempts == 1
        assert sleeps == []

    @patch("httpx.Client.post")
    def test_invalid_request_never_retried(self, mock_post, client, payload):
        mock_post.return_value = _response(400, text="too long")
        with pytest.raises(ModelError):
            client.summarize(payload)
        assert mock_post.call_count == 1

    @patch("httpx.Client.post")
    def test_recovers_after_transient_error(self, mock_post, client, payload, sleeps):
        from httpx import ConnectError

        mock_post.side_effect = [ConnectError("reset"), _response(500, text="oops"), _ok("Fine now.")]
        result = client.summarize(payload)
        assert result.text == "Fine now."
        assert mock_post.call_count == 3
        assert len(sleeps) == 2

    def test_backoff_grows_and_is_capped(self, client):
        delays = [client.backoff_delay(n) for n in range(1, 10)]
        assert 1.0 <= delays[0] <= 1.5
        assert 2.0 <= delays[1] <= 3.0
        assert all(d <= client.backoff_max for d in delays)
        assert delays[-1] == client.backoff_max

    def test_backoff_honors_retry_after(self, client):
        assert client.backoff_delay(1, retry_after=7) >= 7
        assert client.backoff_delay(1, retry_after=999) == client.backoff_max

    @patch("httpx.Client.post")
    def test_retry_after_header_used(self, mock_post, client, payload, sleeps):
        mock_post.side_effect = [_response(429, headers={"Retry-After": "12"}), _ok()]
        client.summarize(payload)
        assert sleeps[0] >= 12
