"""
Tests for the provider table.
"""

import pytest

from gateway.config import Settings
from gateway.services.providers import PROVIDERS, Provider, get_provider_spec
from gateway.services.streaming import AnthropicStreamTracker, OpenAIStreamTracker


def test_provider_set_is_closed():
    assert set(PROVIDERS) == {Provider.OPENAI, Provider.ANTHROPIC}


@pytest.mark.parametrize("provider", list(Provider))
def test_upstream_body_requested_uncompressed(provider: Provider, test_settings: Settings):
    incoming = {"accept-encoding": "gzip, deflate, br"}
    headers = get_provider_spec(provider).build_headers("key", incoming, test_settings)
    assert headers["Accept-Encoding"] == "identity"


class TestOpenAISpec:
    spec = get_provider_spec(Provider.OPENAI)

    def test_url_and_key(self, test_settings: Settings):
        assert self.spec.url(test_settings) == "https://api.openai.test/v1/chat/completions"
        assert self.spec.master_key(test_settings) == "sk-test-openai-master"

    def test_headers(self, test_settings: Settings):
        headers = self.spec.build_headers("sk-abc", {}, test_settings)
        assert headers["Authorization"] == "Bearer sk-abc"
        assert headers["Content-Type"] == "application/json"

    def test_usage_and_text(self):
        body = {
            "choices": [{"message": {"role": "assistant", "content": "hey"}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 3},
        }
        usage = self.spec.extract_usage(body)
        assert (usage.input_tokens, usage.output_tokens) == (10, 3)
        assert self.spec.extract_text(body) == "hey"

    def test_missing_usage(self):
        usage = self.spec.extract_usage({"choices": []})
        assert usage.input_tokens is None and usage.output_tokens is None

    def test_max_output_tokens(self):
        assert self.spec.max_output_tokens({"max_tokens": 100}, 4096) == 100
        assert self.spec.max_output_tokens({"max_completion_tokens": 50}, 4096) == 50
        assert self.spec.max_output_tokens({}, 4096) == 4096
        assert self.spec.max_output_tokens({"max_tokens": "lots"}, 4096) == 4096

    def test_tracker(self):
        assert isinstance(self.spec.new_tracker(), OpenAIStreamTracker)


class TestAnthropicSpec:
    spec = get_provider_spec(Provider.ANTHROPIC)

    def test_url(self, test_settings: Settings):
        assert self.spec.url(test_settings) == "https://api.anthropic.test/v1/messages"

    def test_headers_default_version(self, test_settings: Settings):
        headers = self.spec.build_headers("sk-ant", {}, test_settings)
        assert headers["x-api-key"] == "sk-ant"
        assert headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in headers
        assert "anthropic-beta" not in headers

    def test_headers_forward_client_version_and_beta(self, test_settings: Settings):
        incoming = {"anthropic-version": "2024-01-01", "anthropic-beta": "tools-2024"}
        headers = self.spec.build_headers("sk-ant", incoming, test_settings)
        assert headers["anthropic-version"] == "2024-01-01"
        assert headers["anthropic-beta"] == "tools-2024"

    def test_usage_and_text(self):
        body = {
            "content": [{"type": "text", "text": "a"}, {"type": "tool_use", "id": "x"}],
            "usage": {"input_tokens": 8, "output_tokens": 2},
        }
        usage = self.spec.extract_usage(body)
        assert (usage.input_tokens, usage.output_tokens) == (8, 2)
        assert self.spec.extract_text(body) == "a"

    def test_only_max_tokens_counts(self):
        assert self.spec.max_output_tokens({"max_completion_tokens": 10}, 4096) == 4096

    def test_tracker(self):
        assert isinstance(self.spec.new_tracker(), AnthropicStreamTracker)
