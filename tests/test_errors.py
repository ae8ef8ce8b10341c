"""Tests for ApiError classification and user-facing messages."""

import pytest

from docpilot.llm.errors import (
    ApiError,
    ErrorKind,
    classify,
    friendly_message,
    is_caller_abort,
    is_retryable,
    tag_provider,
)


class TestClassify:
    @pytest.mark.parametrize("status,kind", [
        (401, ErrorKind.AUTH),
        (403, ErrorKind.AUTH),
        (429, ErrorKind.RATE_LIMIT),
        (500, ErrorKind.SERVER),
        (503, ErrorKind.SERVER),
        (400, ErrorKind.UNKNOWN),
    ])
    def test_status_codes(self, status, kind):
        assert classify(ApiError("failed", status)) is kind

    def test_timeout_by_message(self):
        assert classify(ApiError("Request timed out")) is ErrorKind.TIMEOUT
        assert classify(ApiError("upstream TIMEOUT")) is ErrorKind.TIMEOUT

    def test_network_when_no_status(self):
        err = ApiError("Network error: connection refused")
        assert err.kind is ErrorKind.NETWORK
        assert err.retryable

    def test_content_policy_wins_over_status(self):
        filtered = ApiError("Rejected", 400, "openai", {"code": "content_filter"})
        blocked = ApiError("Prompt blocked by safety filters (SAFETY)", 403, "gemini")
        assert classify(filtered) is ErrorKind.CONTENT_POLICY
        assert classify(blocked) is ErrorKind.CONTENT_POLICY
        assert not is_retryable(blocked)

    def test_in_stream_error_is_not_network(self):
        err = ApiError("Unknown model", 0, "openai", {"stream_error": True})
        assert err.kind is ErrorKind.UNKNOWN
        assert not err.retryable

    def test_in_stream_timeout_wording_stays_unknown(self):
        err = ApiError("Upstream tool timed out", 0, "openai", {"stream_error": True})
        assert err.kind is ErrorKind.UNKNOWN

    def test_in_stream_error_with_status_keeps_kind(self):
        err = ApiError("Quota", 429, "gemini", {"stream_error": True})
        assert err.kind is ErrorKind.RATE_LIMIT
        assert err.retryable

    def test_config_error_is_not_network(self):
        err = ApiError("No model specified", 0, context={"config_error": True})
        assert err.kind is ErrorKind.UNKNOWN
        assert not err.retryable


class TestRetryable:
    @pytest.mark.parametrize("status,expected", [
        (429, True),
        (500, True),
        (502, True),
        (400, False),
        (401, False),
        (403, False),
        (404, False),
    ])
    def test_by_status(self, status, expected):
        assert is_retryable(ApiError("x", status)) is expected

    def test_timeout_is_retryable(self):
        assert is_retryable(ApiError("Request timed out", 0, context={"aborted_by": "timeout"}))

    def test_caller_abort_is_not_retryable(self):
        err = ApiError("Request aborted", 0, context={"aborted_by": "caller"})
        assert is_caller_abort(err)
        assert err.kind is ErrorKind.TIMEOUT
        assert not is_retryable(err)


class TestFriendlyMessage:
    def test_deepseek_commercial_override(self):
        err = ApiError("Forbidden", 403, "deepseek", {"code": "commercial_use_required"})
        assert friendly_message(err).startswith("This operation requires commercial use")

    def test_openai_quota_override(self):
        err = ApiError("You exceeded your current quota", 429, "openai", {"code": "insufficient_quota"})
        assert "insufficient credit" in err.friendly_message

    def test_override_is_provider_specific(self):
        err = ApiError("quota", 429, "groq", {"code": "insufficient_quota"})
        assert err.friendly_message == "Rate limit exceeded for Groq. Please try again later."

    def test_wildcard_override(self):
        err = ApiError("too long", 400, "groq", {"code": "context_length_exceeded"})
        assert "Input is too long for the selected model" in err.friendly_message

    def test_rate_limit_with_retry_after(self):
        err = ApiError("slow down", 429, "openai", {"retry_after": 20})
        assert "Please wait 20 seconds" in err.friendly_message

    def test_auth(self):
        err = ApiError("Unauthorized", 401, "gemini")
        assert err.friendly_message == (
            "Authentication failed with Google Gemini. Please check your API key."
        )

    def test_cancelled(self):
        err = ApiError("Request aborted", 0, "openai", {"aborted_by": "caller"})
        assert err.friendly_message == "Request to OpenAI was cancelled."

    def test_content_policy_returns_raw_message(self):
        err = ApiError("Prompt blocked by safety filters (SAFETY)", 400, "gemini")
        assert err.friendly_message == "Prompt blocked by safety filters (SAFETY)"

    def test_unknown_provider_uses_id(self):
        err = ApiError("boom", 400, "acme")
        assert err.friendly_message == "Error communicating with acme: boom"


class TestApiError:
    def test_str_includes_provider_and_status(self):
        assert str(ApiError("boom", 500, "groq")) == "boom [provider=groq] [status=500]"
        assert str(ApiError("boom")) == "boom [provider=unknown]"

    def test_context_is_copied(self):
        ctx = {"model": "a"}
        err = ApiError("x", context=ctx)
        err.context["model"] = "b"
        assert ctx["model"] == "a"


class TestTagProvider:
    def test_wraps_foreign_exception(self):
        cause = ValueError("bad value")
        err = tag_provider(cause, "ollama", model="llama3")
        assert isinstance(err, ApiError)
        assert err.provider == "ollama"
        assert err.status_code == 0
        assert err.context["model"] == "llama3"
        assert err.__cause__ is cause

    def test_keeps_existing_context(self):
        err = ApiError("x", 500, context={"model": "a"})
        tagged = tag_provider(err, "groq", model="b", endpoint="/chat/completions")
        assert tagged is err
        assert err.provider == "groq"
        assert err.context == {"model": "a", "endpoint": "/chat/completions"}
