"""
Tests for the classifier adapter, its backends and the local anomaly heuristics.
"""

import io
import json
import threading
import urllib.error

from datetime import timedelta

import pytest

from flowsense.analysis.classifier import (
    ClassifierAdapter,
    ClassifierBackend,
    LLMClassifierBackend,
    RuleBasedClassifierBackend,
    build_classifier_adapter,
    detect_local_anomaly,
    normalize_category,
)
from flowsense.analysis.llm.client import ChatCompletionClient
from flowsense.analysis.types import AnomalyResult, CategoryResult, OutcomeStatus
from flowsense.config import ClassifierConfig
from flowsense.exceptions import ClassificationUnavailable
from flowsense.models.usage import CategoryUsage
from tests.helpers.synthetic_data import (
    T0,
    FailingBackend,
    RecordingBackend,
    make_event_record,
    make_flow,
)


class FakeClient:
    """Stands in for ChatCompletionClient and records requests."""

    def __init__(self, response):
        self.response = response
        self.requests = []

    def complete_json(self, messages, temperature):
        self.requests.append((messages, temperature))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class BlockingBackend(ClassifierBackend):
    """Backend that never answers until released."""

    name = "blocking"

    def __init__(self):
        self.release = threading.Event()

    def classify(self, flow_data):
        self.release.wait(5)
        return CategoryResult(category="shower", confidence=90)

    def detect_anomaly(self, flow_data):
        self.release.wait(5)
        return AnomalyResult()


@pytest.fixture
def make_adapter():
    adapters = []

    def _make(backend, timeout_seconds=5.0):
        adapter = ClassifierAdapter(backend, timeout_seconds=timeout_seconds)
        adapters.append(adapter)
        return adapter

    yield _make
    for adapter in adapters:
        adapter.close()


class TestNormalizeCategory:
    """Test category label normalization."""

    @pytest.mark.parametrize(
        "label,expected",
        [
            ("shower", "shower"),
            ("Shower", "shower"),
            ("  Washing Machine ", "washing_machine"),
            ("washing-machine", "washing_machine"),
            ("tap", "faucet"),
            ("Kitchen Sink", "faucet"),
            ("bath", "bathtub"),
            ("leak", "leak"),
        ],
    )
    def test_known_labels(self, label, expected):
        assert normalize_category(label) == expected

    @pytest.mark.parametrize("label", ["", None, "jacuzzi", "pool_fill"])
    def test_unknown_labels_become_other(self, label):
        assert normalize_category(label) == "other"


class TestLocalAnomalyHeuristics:
    """Test the sustained low flow and high flow rules."""

    def test_sustained_low_flow_is_possible_leak(self):
        flow = make_flow([100] * 15)

        result = detect_local_anomaly(flow)

        assert result is not None
        assert result.status is OutcomeStatus.HEURISTIC
        assert result.anomalies[0].type == "possible_leak"
        assert result.anomalies[0].severity == "medium"
        assert result.anomalies[0].start == flow[0].time
        assert result.anomalies[0].end == flow[-1].time

    def test_nine_low_samples_do_not_fire(self):
        assert detect_local_anomaly(make_flow([100] * 9 + [500])) is None

    def test_ten_consecutive_low_samples_fire(self):
        assert detect_local_anomaly(make_flow([500] + [150] * 10 + [500])) is not None

    def test_interrupted_low_run_does_not_fire(self):
        assert detect_local_anomaly(make_flow([100] * 6 + [400] + [100] * 6)) is None

    def test_low_flow_bounds_are_exclusive(self):
        assert detect_local_anomaly(make_flow([200] * 12)) is None
        assert detect_local_anomaly(make_flow([0] * 12)) is None

    def test_high_flow_needs_three_samples(self):
        assert detect_local_anomaly(make_flow([16000, 16000, 5000])) is None

        result = detect_local_anomaly(make_flow([16000, 5000, 16000, 17000]))

        assert result is not None
        assert result.anomalies[0].type == "high_flow"
        assert result.anomalies[0].severity == "high"

    def test_high_flow_bound_is_exclusive(self):
        assert detect_local_anomaly(make_flow([15000] * 5)) is None

    def test_normal_profile(self):
        assert detect_local_anomaly(make_flow([9000] * 8)) is None


class TestClassifierAdapter:
    """Test timeout enforcement and failure absorption."""

    def test_classify_passes_backend_result(self, make_adapter):
        backend = RecordingBackend(category="shower", confidence=92)

        result = make_adapter(backend).classify(make_flow([9000] * 5))

        assert result.category == "shower"
        assert result.confidence == 92
        assert result.status is OutcomeStatus.OK
        assert backend.calls == ["classify"]

    def test_classify_failure_gives_fallback(self, make_adapter):
        result = make_adapter(FailingBackend()).classify(make_flow([500] * 3))

        assert result.category == "other"
        assert result.confidence == 50
        assert result.status is OutcomeStatus.UNAVAILABLE
        assert result.error == "service down"

    def test_unexpected_error_is_absorbed(self, make_adapter):
        adapter = make_adapter(FailingBackend(RuntimeError("boom")))

        result = adapter.classify(make_flow([500] * 3))

        assert result.status is OutcomeStatus.UNAVAILABLE
        assert "classify failed" in result.error
        assert "boom" in result.error

    def test_timeout_gives_fallback(self, make_adapter):
        backend = BlockingBackend()
        adapter = make_adapter(backend, timeout_seconds=0.05)
        try:
            result = adapter.classify(make_flow([500] * 3))
            anomaly = adapter.detect_anomaly(make_flow([500] * 3))
        finally:
            backend.release.set()

        assert result.status is OutcomeStatus.UNAVAILABLE
        assert result.category == "other"
        assert "timed out" in result.error
        assert anomaly.status is OutcomeStatus.UNAVAILABLE
        assert anomaly.anomalies == []

    def test_local_heuristic_skips_backend(self, make_adapter):
        backend = RecordingBackend()

        result = make_adapter(backend).detect_anomaly(make_flow([100] * 15))

        assert result.status is OutcomeStatus.HEURISTIC
        assert result.is_anomalous
        assert backend.calls == []

    def test_backend_consulted_without_local_finding(self, make_adapter):
        backend = RecordingBackend()

        result = make_adapter(backend).detect_anomaly(make_flow([100] * 9 + [500]))

        assert backend.calls == ["detect_anomaly"]
        assert result.status is OutcomeStatus.OK
        assert not result.is_anomalous

    def test_detect_anomaly_failure_gives_fallback(self, make_adapter):
        result = make_adapter(FailingBackend()).detect_anomaly(make_flow([500] * 3))

        assert result.status is OutcomeStatus.UNAVAILABLE
        assert result.anomalies == []

    def test_chain_needs_two_events(self, make_adapter):
        backend = RecordingBackend()

        result = make_adapter(backend).analyze_chain([make_event_record(1, T0, 1000)])

        assert not result.is_chain
        assert result.status is OutcomeStatus.HEURISTIC
        assert "two events" in result.explanation
        assert backend.calls == []

    def test_chain_failure(self, make_adapter):
        events = [make_event_record(1, T0, 1000), make_event_record(2, T0, 2000)]

        result = make_adapter(FailingBackend()).analyze_chain(events)

        assert result.status is OutcomeStatus.UNAVAILABLE
        assert not result.is_chain

    def test_recommend_unsupported_returns_none(self, make_adapter):
        assert make_adapter(RuleBasedClassifierBackend()).recommend([], 0, 0) is None


class TestRuleBasedBackend:
    """Test the offline rule classifier."""

    @pytest.fixture
    def backend(self):
        return RuleBasedClassifierBackend()

    @pytest.mark.parametrize(
        "rates,expected",
        [
            ([9000] * 8, "shower"),
            ([2500] * 3, "toilet"),
            ([120] * 10, "leak"),
            ([2000] * 5, "faucet"),
            ([1200] * 40, "dishwasher"),
            ([2500] * 50, "washing_machine"),
            ([14000] * 10, "bathtub"),
            ([8000] * 60, "irrigation"),
        ],
    )
    def test_classify(self, backend, rates, expected):
        result = backend.classify(make_flow(rates))

        assert result.category == expected
        assert 0 <= result.confidence <= 100
        assert result.reasoning

    def test_continuous_flow_over_two_hours(self, backend):
        result = backend.detect_anomaly(make_flow([300] * 121))

        assert result.is_anomalous
        assert result.anomalies[0].type == "possible_leak"

    def test_short_flow_is_normal(self, backend):
        assert not backend.detect_anomaly(make_flow([300] * 30)).is_anomalous

    def test_morning_routine_chain(self, backend):
        events = [
            make_event_record(2, T0 + timedelta(minutes=5), 60000, category="shower"),
            make_event_record(1, T0, 6000, category="toilet"),
        ]

        result = backend.analyze_chain(events)

        assert result.is_chain
        assert result.chain_type == "morning_routine"

    def test_gap_breaks_chain(self, backend):
        events = [
            make_event_record(1, T0, 6000, category="toilet"),
            make_event_record(2, T0 + timedelta(hours=2), 60000, category="shower"),
        ]

        result = backend.analyze_chain(events)

        assert not result.is_chain
        assert "30 minutes" in result.explanation

    def test_unrelated_events(self, backend):
        events = [
            make_event_record(1, T0, 6000, category="shower"),
            make_event_record(2, T0 + timedelta(minutes=10), 6000, category="toilet"),
        ]

        assert not backend.analyze_chain(events).is_chain


class TestLLMBackend:
    """Test request rendering and response parsing for the LLM backend."""

    def test_classify_parses_and_normalizes(self):
        client = FakeClient({"category": "Tap", "confidence": 0.85, "reasoning": "short"})
        backend = LLMClassifierBackend(client)

        result = backend.classify(make_flow([500, 600, 550]))

        assert result.category == "faucet"
        assert result.confidence == 85
        assert result.reasoning == "short"
        messages, temperature = client.requests[0]
        assert temperature == 0.2
        assert messages[0]["role"] == "system"
        assert '"flowRate": 0.5' in messages[1]["content"]

    def test_classify_accepts_percent_confidence(self):
        backend = LLMClassifierBackend(FakeClient({"category": "shower", "confidence": 70}))

        assert backend.classify(make_flow([9000] * 5)).confidence == 70

    def test_classify_without_category_raises(self):
        backend = LLMClassifierBackend(FakeClient({"confidence": 0.9}))

        with pytest.raises(ClassificationUnavailable):
            backend.classify(make_flow([500] * 3))

    def test_missing_category_falls_back_through_adapter(self, make_adapter):
        adapter = make_adapter(LLMClassifierBackend(FakeClient({})))

        result = adapter.classify(make_flow([500] * 3))

        assert result.status is OutcomeStatus.UNAVAILABLE
        assert result.category == "other"

    def test_detect_anomaly_parses_findings(self):
        client = FakeClient(
            {
                "anomalies": [
                    {"type": "unusual_timing", "severity": "LOW"},
                    "irregular_pattern",
                    {"severity": "high"},
                ],
                "details": "Use at 3am",
            }
        )

        result = LLMClassifierBackend(client).detect_anomaly(make_flow([500] * 3))

        assert [a.type for a in result.anomalies] == ["unusual_timing", "irregular_pattern"]
        assert [a.severity for a in result.anomalies] == ["low", "medium"]
        assert result.details == "Use at 3am"

    def test_detect_anomaly_rejects_non_list(self):
        backend = LLMClassifierBackend(FakeClient({"anomalies": "none"}))

        with pytest.raises(ClassificationUnavailable):
            backend.detect_anomaly(make_flow([500] * 3))

    def test_analyze_chain(self):
        client = FakeClient(
            {"isChain": True, "chainType": "morning_routine", "explanation": "toilet then shower"}
        )
        events = [
            make_event_record(1, T0, 6000, category="toilet"),
            make_event_record(2, T0 + timedelta(minutes=5), 60000, category="shower"),
        ]

        result = LLMClassifierBackend(client).analyze_chain(events)

        assert result.is_chain
        assert result.chain_type == "morning_routine"
        assert '"category": "toilet"' in client.requests[0][0][1]["content"]

    def test_recommend_skips_malformed_items(self):
        client = FakeClient(
            {
                "recommendations": [
                    {
                        "id": 1,
                        "title": "Shorter showers",
                        "description": "Aim for five minutes.",
                        "type": "Shower",
                        "priority": 9,
                    },
                    {"title": "No description"},
                ]
            }
        )
        categories = [
            CategoryUsage(
                name="shower",
                volume="60.0 L",
                volume_ml=60000,
                event_count=1,
                percentage=100.0,
                usage_share=100.0,
            )
        ]

        tips = LLMClassifierBackend(client).recommend(categories, 60000, 10)

        assert len(tips) == 1
        assert tips[0].id == "ai-1"
        assert tips[0].type == "shower"
        assert tips[0].priority == 5
        assert "60.0 liters" in client.requests[0][0][1]["content"]


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class TestChatCompletionClient:
    """Test the HTTP client failure mapping."""

    def make_client(self, opener, api_key="test-key"):
        return ChatCompletionClient(
            api_base="https://example.invalid/v1/",
            model="test-model",
            api_key=api_key,
            timeout=1.0,
            opener=opener,
        )

    def test_missing_key_fails_fast(self):
        def opener(*args, **kwargs):
            raise AssertionError("no request expected")

        client = self.make_client(opener, api_key=None)

        assert not client.is_configured
        with pytest.raises(ClassificationUnavailable, match="API key"):
            client.complete_json([], 0.2)

    def test_parses_message_content(self):
        seen = {}

        def opener(request, timeout):
            seen["url"] = request.full_url
            seen["body"] = json.loads(request.data)
            content = json.dumps({"category": "shower"})
            payload = {"choices": [{"message": {"content": content}}]}
            return FakeResponse(json.dumps(payload).encode())

        result = self.make_client(opener).complete_json(
            [{"role": "user", "content": "hi"}], 0.3
        )

        assert result == {"category": "shower"}
        assert seen["url"] == "https://example.invalid/v1/chat/completions"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["temperature"] == 0.3

    def test_http_error(self):
        def opener(request, timeout):
            raise urllib.error.HTTPError(request.full_url, 503, "down", {}, None)

        with pytest.raises(ClassificationUnavailable, match="HTTP 503"):
            self.make_client(opener).complete_json([], 0.2)

    def test_network_error(self):
        def opener(request, timeout):
            raise urllib.error.URLError("refused")

        with pytest.raises(ClassificationUnavailable, match="unreachable"):
            self.make_client(opener).complete_json([], 0.2)

    def test_malformed_content(self):
        def opener(request, timeout):
            payload = {"choices": [{"message": {"content": "not json"}}]}
            return FakeResponse(json.dumps(payload).encode())

        with pytest.raises(ClassificationUnavailable, match="Malformed"):
            self.make_client(opener).complete_json([], 0.2)


class TestBuildAdapter:
    """Test backend selection."""

    def test_rules_backend(self):
        adapter = build_classifier_adapter(ClassifierConfig(backend="rules"))
        try:
            assert isinstance(adapter.backend, RuleBasedClassifierBackend)
        finally:
            adapter.close()

    def test_llm_backend(self):
        config = ClassifierConfig(backend="llm", timeout_seconds=3.0)
        adapter = build_classifier_adapter(config)
        try:
            assert isinstance(adapter.backend, LLMClassifierBackend)
            assert adapter.timeout_seconds == 3.0
        finally:
            adapter.close()

    def test_consent_withdrawn_uses_rules(self):
        adapter = build_classifier_adapter(
            ClassifierConfig(backend="llm"), allow_ai_analysis=False
        )
        try:
            assert isinstance(adapter.backend, RuleBasedClassifierBackend)
        finally:
            adapter.close()

    def test_llm_without_key_falls_back(self):
        adapter = build_classifier_adapter(ClassifierConfig(backend="llm"))
        try:
            result = adapter.classify(make_flow([500] * 3))
        finally:
            adapter.close()

        assert result.status is OutcomeStatus.UNAVAILABLE
        assert "API key" in result.error
