"""
Judge client tests

Covers the RetryMixin backoff, the create_judge_client() factory branches and
the provider request/response translation.
"""

import json

import anthropic
import httpx
import openai
import pytest
from unittest.mock import patch, MagicMock

from prompt_loop_core.domain.constants import BatchJobStatus
from prompt_loop_core.domain.errors import ParseError, ProviderError
from prompt_loop_core.domain.value_objects import BatchRequest, JudgeRequest
from prompt_loop_core.infrastructure.judge_clients.base import RetryMixin
from prompt_loop_core.infrastructure.judge_clients.claude_judge import (
    ClaudeJudgeClient,
    to_anthropic_params,
)
from prompt_loop_core.infrastructure.judge_clients.factory import (
    create_batch_judge_client,
    create_judge_client,
)
from prompt_loop_core.infrastructure.judge_clients.openai_judge import (
    OpenAIJudgeClient,
    build_response_format,
    parse_batch_output,
)
from prompt_loop_core.infrastructure.judge_clients.vertex_ai_judge import (
    VertexAIJudgeClient,
    flatten_messages,
)
from prompt_loop_core.loop_config import JudgeSettings


SCHEMA = {"type": "object", "properties": {"score": {"type": "number"}}}


def _request(schema=None):
    return JudgeRequest(
        messages=[
            {"role": "system", "content": "You are a judge."},
            {"role": "user", "content": [
                {"type": "text", "text": "Score this."},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
            ]},
        ],
        response_schema=schema,
        schema_name="correctness",
    )


def _http_request():
    return httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _openai_timeout():
    return openai.APITimeoutError(request=_http_request())


class TestRetryMixin:
    """RetryMixin._with_retry()"""

    def _make_mixin(self, max_retries=3):
        mixin = RetryMixin()
        mixin.max_retries = max_retries
        return mixin

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_success_on_first_attempt(self, mock_sleep):
        mixin = self._make_mixin()
        fn = MagicMock(return_value="ok")

        assert mixin._with_retry(fn) == "ok"
        fn.assert_called_once()
        mock_sleep.assert_not_called()

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_success_after_two_failures(self, mock_sleep):
        mixin = self._make_mixin(max_retries=3)
        fn = MagicMock(side_effect=[ValueError("1"), ValueError("2"), "ok"])

        assert mixin._with_retry(fn) == "ok"
        assert fn.call_count == 3
        # Exponential backoff: sleep(1), sleep(2)
        mock_sleep.assert_any_call(1)
        mock_sleep.assert_any_call(2)

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_exhausted_retries_raise_provider_error(self, mock_sleep):
        mixin = self._make_mixin(max_retries=3)
        mixin.provider_name = "openai"
        fn = MagicMock(side_effect=[ValueError("1"), ValueError("2"), ValueError("final")])

        with pytest.raises(ProviderError, match="final") as exc_info:
            mixin._with_retry(fn)

        assert fn.call_count == 3
        assert exc_info.value.provider == "openai"
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_max_retries_zero_raises_value_error(self):
        mixin = self._make_mixin(max_retries=0)
        fn = MagicMock(return_value="ok")

        with pytest.raises(ValueError, match="max_retries must be at least 1"):
            mixin._with_retry(fn)
        fn.assert_not_called()

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_non_retryable_exception_is_wrapped(self, mock_sleep):
        mixin = self._make_mixin(max_retries=3)
        mixin.provider_name = "anthropic"
        fn = MagicMock(side_effect=TypeError("not retryable"))

        with pytest.raises(ProviderError, match="not retryable") as exc_info:
            mixin._with_retry(fn, retryable_exceptions=(ValueError,))
        assert isinstance(exc_info.value.__cause__, TypeError)
        assert exc_info.value.provider == "anthropic"
        fn.assert_called_once()
        mock_sleep.assert_not_called()

    def test_domain_errors_are_not_wrapped(self):
        mixin = self._make_mixin(max_retries=3)
        fn = MagicMock(side_effect=ParseError("bad batch line"))

        with pytest.raises(ParseError):
            mixin._with_retry(fn)
        fn.assert_called_once()

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_call_once_ignores_max_retries(self, mock_sleep):
        mixin = self._make_mixin(max_retries=3)
        fn = MagicMock(side_effect=ValueError("timeout"))

        with pytest.raises(ProviderError, match="timeout"):
            mixin._call_once(fn)
        fn.assert_called_once()
        mock_sleep.assert_not_called()


class TestCreateJudgeClient:
    def test_openai(self):
        client = create_judge_client(JudgeSettings(provider="openai", model="gpt-4o", api_key="test-key"))
        assert isinstance(client, OpenAIJudgeClient)
        assert client.model_name == "gpt-4o"

    def test_anthropic(self):
        client = create_judge_client(JudgeSettings(provider="Anthropic", model="claude-x", api_key="test-key"))
        assert isinstance(client, ClaudeJudgeClient)

    @patch.dict("os.environ", {"GCP_PROJECT_ID": "test-project"})
    @patch("prompt_loop_core.infrastructure.judge_clients.vertex_ai_judge.genai.Client")
    def test_vertex_ai(self, mock_client):
        client = create_judge_client(JudgeSettings(provider="vertex_ai", model="gemini-2.5-flash"))
        assert isinstance(client, VertexAIJudgeClient)
        mock_client.assert_called_once()

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown judge provider"):
            create_judge_client(JudgeSettings(provider="mystery"))

    @patch.dict("os.environ", {"OPENAI_API_KEY": ""})
    def test_missing_openai_key(self):
        with pytest.raises(ValueError, match="OPENAI_API_KEY"):
            create_judge_client(JudgeSettings(provider="openai", api_key=None))

    @patch.dict("os.environ", {"GCP_PROJECT_ID": "test-project"})
    @patch("prompt_loop_core.infrastructure.judge_clients.vertex_ai_judge.genai.Client")
    def test_batch_requires_batch_capable_provider(self, mock_client):
        with pytest.raises(ValueError, match="does not support batch"):
            create_batch_judge_client(JudgeSettings(provider="vertex_ai", model="gemini-2.5-flash"))

    def test_batch_openai(self):
        client = create_batch_judge_client(JudgeSettings(provider="openai", api_key="test-key"))
        assert isinstance(client, OpenAIJudgeClient)


class TestOpenAIJudgeClient:
    def _client(self, max_retries=1):
        client = OpenAIJudgeClient("gpt-4o", api_key="test-key", max_retries=max_retries)
        client.client = MagicMock()
        return client

    def test_response_format(self):
        assert build_response_format(_request()) is None
        fmt = build_response_format(_request(SCHEMA))
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["name"] == "correctness"
        assert fmt["json_schema"]["schema"] == SCHEMA

    def test_complete(self):
        client = self._client()
        completion = MagicMock()
        completion.choices = [MagicMock()]
        completion.choices[0].message.content = ' {"score": 9} '
        completion.usage.prompt_tokens = 120
        completion.usage.completion_tokens = 8
        client.client.chat.completions.create.return_value = completion

        response = client.complete(_request(SCHEMA))

        assert response.text == '{"score": 9}'
        assert response.input_tokens == 120
        kwargs = client.client.chat.completions.create.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["response_format"]["json_schema"]["name"] == "correctness"

    def test_timeout_is_attempted_once(self):
        client = self._client(max_retries=3)
        client.client.chat.completions.create.side_effect = _openai_timeout()

        with pytest.raises(ProviderError) as exc_info:
            client.complete(_request(SCHEMA))

        assert client.client.chat.completions.create.call_count == 1
        assert isinstance(exc_info.value.__cause__, openai.APITimeoutError)

    def test_authentication_error_becomes_provider_error(self):
        client = self._client(max_retries=3)
        client.client.chat.completions.create.side_effect = openai.AuthenticationError(
            "invalid api key",
            response=httpx.Response(401, request=_http_request()),
            body=None,
        )

        with pytest.raises(ProviderError, match="invalid api key"):
            client.complete(_request())
        assert client.client.chat.completions.create.call_count == 1

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_batch_poll_retries_transient_errors(self, mock_sleep):
        client = self._client(max_retries=3)
        batch = MagicMock(status="in_progress")
        batch.request_counts.total = 2
        batch.request_counts.completed = 1
        batch.request_counts.failed = 0
        client.client.batches.retrieve.side_effect = [_openai_timeout(), _openai_timeout(), batch]

        status = client.retrieve_batch("batch_1")

        assert status.status == BatchJobStatus.PROCESSING
        assert client.client.batches.retrieve.call_count == 3

    def test_submit_batch_uploads_jsonl(self):
        client = self._client()
        client.client.files.create.return_value = MagicMock(id="file_1")
        client.client.batches.create.return_value = MagicMock(id="batch_1")

        job_id = client.submit_batch([
            BatchRequest(custom_id="r1-correctness", request=_request(SCHEMA)),
            BatchRequest(custom_id="r1-completeness", request=_request(SCHEMA)),
        ])

        assert job_id == "batch_1"
        _, payload = client.client.files.create.call_args.kwargs["file"]
        lines = payload.decode("utf-8").strip().split("\n")
        assert [json.loads(line)["custom_id"] for line in lines] == ["r1-correctness", "r1-completeness"]
        assert client.client.batches.create.call_args.kwargs["completion_window"] == "24h"

    @pytest.mark.parametrize("provider_status,expected", [
        ("validating", BatchJobStatus.SUBMITTED),
        ("in_progress", BatchJobStatus.PROCESSING),
        ("completed", BatchJobStatus.COMPLETED),
        ("expired", BatchJobStatus.FAILED),
    ])
    def test_retrieve_batch_status_mapping(self, provider_status, expected):
        client = self._client()
        batch = MagicMock(status=provider_status)
        batch.request_counts.total = 4
        batch.request_counts.completed = 3
        batch.request_counts.failed = 1
        client.client.batches.retrieve.return_value = batch

        status = client.retrieve_batch("batch_1")

        assert status.status == expected
        assert status.provider_status == provider_status
        assert status.completed == 3

    def test_fetch_without_output_file_raises(self):
        client = self._client()
        client.client.batches.retrieve.return_value = MagicMock(output_file_id=None)
        with pytest.raises(ProviderError):
            client.fetch_batch_results("batch_1")


class TestParseBatchOutput:
    def _line(self, custom_id, content, status_code=200):
        return json.dumps({
            "custom_id": custom_id,
            "response": {
                "status_code": status_code,
                "body": {"choices": [{"message": {"content": content}}]},
            },
        })

    def test_successful_lines(self):
        text = "\n".join([self._line("r1-correctness", '{"score": 9}'), "", self._line("r2-correctness", "x")])
        assert parse_batch_output(text) == {"r1-correctness": '{"score": 9}', "r2-correctness": "x"}

    def test_failed_lines_are_omitted(self):
        text = "\n".join([self._line("r1-correctness", "ok"), self._line("r2-correctness", "bad", 500)])
        assert list(parse_batch_output(text)) == ["r1-correctness"]

    def test_malformed_line_raises(self):
        with pytest.raises(ParseError):
            parse_batch_output("{not json")


class TestAnthropicParams:
    def test_system_messages_are_lifted(self):
        params = to_anthropic_params(_request(), "claude-x", 1024)
        assert params["system"] == "You are a judge."
        assert [m["role"] for m in params["messages"]] == ["user"]
        assert params["max_tokens"] == 1024

    def test_data_url_becomes_base64_block(self):
        params = to_anthropic_params(_request(), "claude-x", 1024)
        image = params["messages"][0]["content"][1]
        assert image == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"},
        }

    def test_schema_is_enforced_through_system_prompt(self):
        params = to_anthropic_params(_request(SCHEMA), "claude-x", 1024)
        assert "JSON schema" in params["system"]
        assert json.dumps(SCHEMA) in params["system"]

    def test_retrieve_batch_ended_with_successes_is_completed(self):
        client = ClaudeJudgeClient("claude-x", api_key="test-key", max_retries=1)
        client.client = MagicMock()
        batch = MagicMock(processing_status="ended")
        batch.request_counts = MagicMock(succeeded=3, errored=1, canceled=0, expired=0, processing=0)
        client.client.messages.batches.retrieve.return_value = batch

        status = client.retrieve_batch("msgbatch_1")

        assert status.status == BatchJobStatus.COMPLETED
        assert status.total == 4
        assert status.failed == 1


def test_vertex_flatten_messages():
    prompt = flatten_messages(_request(SCHEMA))
    assert prompt.startswith("You are a judge.")
    assert "User: Score this.\n[Image]" in prompt
    assert prompt.rstrip().endswith(json.dumps(SCHEMA))


class TestClaudeJudgeClient:
    def test_bad_request_becomes_provider_error(self):
        client = ClaudeJudgeClient("claude-x", api_key="test-key", max_retries=3)
        client.client = MagicMock()
        client.client.messages.create.side_effect = anthropic.BadRequestError(
            "prompt is too long",
            response=httpx.Response(400, request=_http_request()),
            body=None,
        )

        with pytest.raises(ProviderError, match="prompt is too long") as exc_info:
            client.complete(_request())

        assert exc_info.value.provider == "anthropic"
        assert client.client.messages.create.call_count == 1
