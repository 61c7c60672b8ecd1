"""Unit tests for parlor_etl.llm_commentary — no network; the HTTP session is faked."""

from __future__ import annotations

import json
from datetime import date

import pytest
import requests

from parlor_etl.analysis import AnalysisCounters, run_analysis
from parlor_etl.llm_commentary import (
    ANTHROPIC_VERSION,
    REQUIRED_FIELDS,
    ClaudeCommentator,
    LlmUnavailableError,
    apply_commentary,
    parse_llm_reply,
    validate_llm_analysis,
)
from parlor_etl.models import DailyPerformance, Store
from parlor_etl.scoring import score
from parlor_etl.scoring_rules import ScoringConfig

STORE = Store("s001", "テスト店", "東京都", nearest_station="新宿")


def _analysis():
    return score([DailyPerformance("s001", date(2025, 8, 9), average_difference=100)], STORE)


def _llm_object(**overrides) -> dict:
    data = {f: 0 for f in REQUIRED_FIELDS}
    data.update(recommended_machines=[], play_strategy={}, comment="本日は狙い目です。")
    data.update(overrides)
    return data


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, text: str = "") -> None:
        self.status_code = status_code
        self._body = body
        self.text = text or json.dumps(body, ensure_ascii=False)

    def json(self):
        if self._body is None:
            raise ValueError("no JSON")
        return self._body


class FakeSession:
    def __init__(self, response=None, exc: Exception | None = None) -> None:
        self.response = response
        self.exc = exc
        self.calls: list[dict] = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.exc is not None:
            raise self.exc
        return self.response


def _message(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


class TestParseReply:
    def test_fenced_block(self):
        text = "分析結果です:\n```json\n{\"comment\": \"ok\"}\n```\n以上"
        assert parse_llm_reply(text) == {"comment": "ok"}

    def test_bare_object(self):
        assert parse_llm_reply('Here: {"a": {"b": 1}} done') == {"a": {"b": 1}}

    def test_no_json(self):
        with pytest.raises(LlmUnavailableError):
            parse_llm_reply("申し訳ありません")

    def test_malformed(self):
        with pytest.raises(LlmUnavailableError):
            parse_llm_reply('{"comment": ')

    def test_missing_field(self):
        data = _llm_object()
        del data["confidence"]
        with pytest.raises(LlmUnavailableError, match="confidence"):
            validate_llm_analysis(data)

    def test_empty_comment(self):
        with pytest.raises(LlmUnavailableError):
            validate_llm_analysis(_llm_object(comment="  "))


class TestClaudeCommentator:
    def test_missing_key(self):
        with pytest.raises(LlmUnavailableError):
            ClaudeCommentator("")

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PARLOR_TEST_KEY", "sk-test")
        assert ClaudeCommentator.from_env("PARLOR_TEST_KEY", session=FakeSession()).api_key == "sk-test"

    def test_request_shape(self):
        reply = "```json\n" + json.dumps(_llm_object(), ensure_ascii=False) + "\n```"
        session = FakeSession(FakeResponse(body=_message(reply)))
        data = ClaudeCommentator("sk-test", session=session).comment(STORE, _analysis())
        assert data["comment"] == "本日は狙い目です。"
        (call,) = session.calls
        assert call["headers"]["x-api-key"] == "sk-test"
        assert call["headers"]["anthropic-version"] == ANTHROPIC_VERSION
        content = json.loads(call["json"]["messages"][0]["content"])
        assert content["store"]["store_id"] == "s001"
        assert content["analysis"]["analysis_date"] == "2025-08-09"
        for field in REQUIRED_FIELDS:
            assert field in call["json"]["system"]

    def test_http_error(self):
        session = FakeSession(FakeResponse(status_code=529, body={"error": "overloaded"}))
        with pytest.raises(LlmUnavailableError, match="529"):
            ClaudeCommentator("k", session=session).comment(STORE, _analysis())

    def test_connection_error(self):
        session = FakeSession(exc=requests.ConnectionError("down"))
        with pytest.raises(LlmUnavailableError):
            ClaudeCommentator("k", session=session).comment(STORE, _analysis())

    def test_non_json_body(self):
        session = FakeSession(FakeResponse(body=None, text="<html>"))
        with pytest.raises(LlmUnavailableError):
            ClaudeCommentator("k", session=session).comment(STORE, _analysis())

    @pytest.mark.parametrize("body", [
        ["not", "an", "object"],
        {"content": "plain string"},
        {"content": [{"type": "text", "text": 42}]},
    ])
    def test_unexpected_body_shape(self, body):
        session = FakeSession(FakeResponse(body=body))
        with pytest.raises(LlmUnavailableError):
            ClaudeCommentator("k", session=session).comment(STORE, _analysis())


class TestApplyCommentary:
    def test_none_commentator_returns_engine_analysis(self):
        analysis = _analysis()
        assert apply_commentary(None, STORE, analysis) is analysis

    def test_success_replaces_comment_only(self):
        reply = json.dumps(_llm_object(total_score=99), ensure_ascii=False)
        session = FakeSession(FakeResponse(body=_message(reply)))
        analysis = _analysis()
        result = apply_commentary(ClaudeCommentator("k", session=session), STORE, analysis)
        assert result.comment == "本日は狙い目です。"
        assert result.comment_source == "llm"
        assert result.total_score == analysis.total_score

    @pytest.mark.parametrize("response", [
        FakeResponse(status_code=500, body={}),
        FakeResponse(body=_message("no json here")),
        FakeResponse(body=_message(json.dumps({"comment": "incomplete"}))),
        FakeResponse(body=["not", "an", "object"]),
        FakeResponse(body={"content": [{"type": "text", "text": None}]}),
    ])
    def test_failures_fall_back(self, response):
        analysis = _analysis()
        result = apply_commentary(ClaudeCommentator("k", session=FakeSession(response)), STORE, analysis)
        assert result is analysis
        assert result.comment_source == "engine"

    def test_commentator_without_comment_falls_back(self):
        class BlankCommentator:
            def comment(self, store, analysis):
                return {"comment": None}

        analysis = _analysis()
        assert apply_commentary(BlankCommentator(), STORE, analysis) is analysis

    def test_list_body_does_not_abort_rerun(self, repo):
        repo.upsert_store(STORE)
        repo.performances[("s001", date(2025, 8, 9))] = DailyPerformance("s001", date(2025, 8, 9))
        commentator = ClaudeCommentator("k", session=FakeSession(FakeResponse(body=["x"])))
        counters = AnalysisCounters()
        (saved,) = run_analysis(repo, date(2025, 8, 9), ScoringConfig(), counters, commentator=commentator)
        assert saved.comment_source == "engine"
        assert counters.analyses_saved == 1
        assert counters.llm_comments == 0
