"""
Event classification boundary.

The ClassifierAdapter asks a backend (an LLM service or local rules) for a
category and an anomaly determination of a closed event's flow profile.
Backends may fail or hang; the adapter enforces a timeout and turns every
failure into deterministic fallback values tagged OutcomeStatus.UNAVAILABLE,
so ingestion never sees a classifier error.
"""

import logging
import statistics

from abc import ABC, abstractmethod
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from flowsense.analysis.llm.client import ChatCompletionClient
from flowsense.analysis.llm.prompt_manager import PromptManager
from flowsense.analysis.types import (
    AnomalyFinding,
    AnomalyResult,
    CategoryResult,
    ChainAnalysis,
    FlowSample,
    OutcomeStatus,
)
from flowsense.config import ClassifierConfig
from flowsense.constants import CATEGORY_ALIASES, AnomalyType, EventCategory
from flowsense.constants import AnomalyHeuristicConstants as AHC
from flowsense.constants import ClassifierConstants as CC
from flowsense.exceptions import ClassificationUnavailable
from flowsense.models.event import WaterEventRecord
from flowsense.models.usage import CategoryUsage, Recommendation

logger = logging.getLogger(__name__)

__all__ = [
    "ClassifierAdapter",
    "ClassifierBackend",
    "LLMClassifierBackend",
    "RuleBasedClassifierBackend",
    "build_classifier_adapter",
    "detect_local_anomaly",
    "normalize_category",
]


def normalize_category(label: str | None) -> str:
    """
    Map a free-form category label onto a known category.

    Args:
        label: Label as returned by a backend or entered by a user

    Returns:
        Lowercase snake_case category, "other" for unknown labels
    """
    if not label:
        return EventCategory.OTHER.value
    key = label.strip().lower().replace("-", "_").replace(" ", "_")
    if key in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[key].value
    try:
        return EventCategory(key).value
    except ValueError:
        return EventCategory.OTHER.value


def detect_local_anomaly(flow_data: Sequence[FlowSample]) -> AnomalyResult | None:
    """
    Run the cheap local anomaly heuristics.

    Sustained low flow: at least LOW_FLOW_MIN_CONSECUTIVE consecutive samples
    with 0 < rate < 0.2 L/min. Sustained high flow: at least
    HIGH_FLOW_MIN_SAMPLES samples with rate > 15 L/min.

    Args:
        flow_data: Event flow samples in order

    Returns:
        Heuristic result if either rule fires, else None
    """
    run: list[FlowSample] = []
    for sample in flow_data:
        if 0 < sample.rate < AHC.LOW_FLOW_MAX_RATE_ML_PER_MIN:
            run.append(sample)
        elif len(run) >= AHC.LOW_FLOW_MIN_CONSECUTIVE:
            break
        else:
            run = []

    if len(run) >= AHC.LOW_FLOW_MIN_CONSECUTIVE:
        return AnomalyResult.heuristic(
            AnomalyType.POSSIBLE_LEAK, "medium", run, AHC.LEAK_DETAILS
        )

    high = [s for s in flow_data if s.rate > AHC.HIGH_FLOW_MIN_RATE_ML_PER_MIN]
    if len(high) >= AHC.HIGH_FLOW_MIN_SAMPLES:
        return AnomalyResult.heuristic(
            AnomalyType.HIGH_FLOW, "high", high, AHC.HIGH_FLOW_DETAILS
        )

    return None


def _flow_profile(flow_data: Sequence[FlowSample]) -> list[dict[str, Any]]:
    return [
        {"time": s.time.isoformat(), "flowRate": round(s.rate_l_per_min, 3)}
        for s in flow_data
    ]


def _chain_profile(events: Sequence[WaterEventRecord]) -> list[dict[str, Any]]:
    return [
        {
            "category": e.category,
            "start": e.start_time.isoformat(),
            "end": e.end_time.isoformat(),
            "volumeL": round(e.volume_liters, 1),
            "durationSeconds": e.duration_seconds,
        }
        for e in events
    ]


def _to_confidence(value: Any) -> int:
    """Convert a 0-1 or 0-100 confidence to an int in 0-100."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return CC.FALLBACK_CONFIDENCE
    if number <= 1:
        number *= 100
    return int(round(min(max(number, 0.0), 100.0)))


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


# ============================================================================
# Backends
# ============================================================================


class ClassifierBackend(ABC):
    """Source of category, anomaly and chain judgements for flow profiles."""

    name = "backend"

    @abstractmethod
    def classify(self, flow_data: Sequence[FlowSample]) -> CategoryResult:
        """Return a category for the flow profile."""

    @abstractmethod
    def detect_anomaly(self, flow_data: Sequence[FlowSample]) -> AnomalyResult:
        """Return anomalies found in the flow profile."""

    def analyze_chain(self, events: Sequence[WaterEventRecord]) -> ChainAnalysis:
        raise ClassificationUnavailable(f"{self.name} backend cannot analyze chains")

    def recommend(
        self,
        categories: Sequence[CategoryUsage],
        total_usage_ml: int,
        usage_comparison: int,
    ) -> list[Recommendation]:
        raise ClassificationUnavailable(f"{self.name} backend cannot recommend")


class LLMClassifierBackend(ClassifierBackend):
    """Classifier backed by an OpenAI-compatible chat completion service."""

    name = "llm"

    def __init__(
        self, client: ChatCompletionClient, prompt_manager: PromptManager | None = None
    ):
        self.client = client
        self.prompts = prompt_manager or PromptManager()

    def classify(self, flow_data: Sequence[FlowSample]) -> CategoryResult:
        messages = self.prompts.render_messages(
            "categorize", flow_profile=_flow_profile(flow_data)
        )
        result = self.client.complete_json(messages, CC.CATEGORIZE_TEMPERATURE)

        if not result.get("category"):
            raise ClassificationUnavailable("Classifier response has no category")

        return CategoryResult(
            category=normalize_category(str(result["category"])),
            confidence=_to_confidence(result.get("confidence")),
            reasoning=str(result.get("reasoning") or ""),
        )

    def detect_anomaly(self, flow_data: Sequence[FlowSample]) -> AnomalyResult:
        messages = self.prompts.render_messages(
            "anomalies", flow_profile=_flow_profile(flow_data)
        )
        result = self.client.complete_json(messages, CC.ANOMALY_TEMPERATURE)

        raw_anomalies = result.get("anomalies") or []
        if not isinstance(raw_anomalies, list):
            raise ClassificationUnavailable("Classifier anomalies is not a list")

        findings = []
        for item in raw_anomalies:
            if isinstance(item, str):
                item = {"type": item}
            if not isinstance(item, dict) or not item.get("type"):
                continue
            severity = str(item.get("severity", "medium")).lower()
            findings.append(
                AnomalyFinding(
                    type=str(item["type"]),
                    severity=severity if severity in ("low", "medium", "high") else "medium",
                    start=_parse_time(item.get("start")),
                    end=_parse_time(item.get("end")),
                )
            )

        return AnomalyResult(anomalies=findings, details=str(result.get("details") or ""))

    def analyze_chain(self, events: Sequence[WaterEventRecord]) -> ChainAnalysis:
        messages = self.prompts.render_messages("chain", events=_chain_profile(events))
        result = self.client.complete_json(messages, CC.CHAIN_TEMPERATURE)
        return ChainAnalysis(
            is_chain=bool(result.get("isChain", False)),
            chain_type=str(result.get("chainType") or ""),
            explanation=str(result.get("explanation") or ""),
        )

    def recommend(
        self,
        categories: Sequence[CategoryUsage],
        total_usage_ml: int,
        usage_comparison: int,
    ) -> list[Recommendation]:
        messages = self.prompts.render_messages(
            "recommendations",
            total_liters=round(total_usage_ml / 1000, 1),
            usage_comparison=usage_comparison,
            categories=[
                {"name": c.name, "liters": c.volume, "percentage": c.percentage}
                for c in categories
            ],
            max_tips=3,
        )
        result = self.client.complete_json(messages, CC.RECOMMENDATION_TEMPERATURE)

        raw = result.get("recommendations")
        if not isinstance(raw, list):
            raise ClassificationUnavailable("Classifier recommendations is not a list")

        recommendations = []
        for index, item in enumerate(raw, start=1):
            if not isinstance(item, dict):
                continue
            try:
                recommendations.append(
                    Recommendation(
                        id=f"ai-{item.get('id', index)}",
                        title=str(item["title"]),
                        description=str(item["description"]),
                        type=normalize_category(str(item.get("type", ""))),
                        priority=min(max(int(item.get("priority", 3)), 1), 5),
                    )
                )
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.debug(f"Skipping malformed recommendation {item!r}: {e}")
        return recommendations


class RuleBasedClassifierBackend(ClassifierBackend):
    """
    Deterministic classifier using duration, volume and flow-rate rules.

    Needs no network access; used when AI analysis is disabled or configured
    off.
    """

    name = "rules"

    CHAIN_MAX_GAP_SECONDS = 30 * 60
    CONTINUOUS_FLOW_LEAK_SECONDS = 2 * 3600

    # chain type -> categories that must all appear, in this order
    CHAIN_PATTERNS = [
        ("morning_routine", (EventCategory.TOILET.value, EventCategory.SHOWER.value)),
        ("dishwashing", (EventCategory.FAUCET.value, EventCategory.DISHWASHER.value)),
        (
            "laundry",
            (EventCategory.WASHING_MACHINE.value, EventCategory.WASHING_MACHINE.value),
        ),
    ]

    @staticmethod
    def _profile_metrics(flow_data: Sequence[FlowSample]) -> tuple[float, float, float, float]:
        """Return (duration_s, volume_l, peak_l_per_min, mean_l_per_min)."""
        rates = [s.rate_l_per_min for s in flow_data]
        if len(flow_data) > 1:
            gaps = [
                (b.time - a.time).total_seconds()
                for a, b in zip(flow_data, flow_data[1:], strict=False)
            ]
            interval = statistics.median(gaps)
            duration = (flow_data[-1].time - flow_data[0].time).total_seconds() + interval
        else:
            duration = 60.0
        mean_rate = statistics.fmean(rates) if rates else 0.0
        return duration, mean_rate * duration / 60, max(rates, default=0.0), mean_rate

    def classify(self, flow_data: Sequence[FlowSample]) -> CategoryResult:
        duration, volume, peak, mean = self._profile_metrics(flow_data)

        if mean < 0.5 and duration >= 300:
            category, confidence = EventCategory.LEAK, 60
        elif duration >= 300 and volume >= 80 and mean > 10:
            category, confidence = EventCategory.BATHTUB, 60
        elif 240 <= duration <= 1800 and volume >= 20 and 5 <= mean <= 15:
            category, confidence = EventCategory.SHOWER, 70
        elif duration <= 180 and 4 <= volume <= 10 and mean >= 2:
            category, confidence = EventCategory.TOILET, 75
        elif duration > 1800 and volume >= 50 and mean > 5:
            category, confidence = EventCategory.IRRIGATION, 55
        elif 900 <= duration <= 5400 and mean < 2:
            category, confidence = EventCategory.DISHWASHER, 50
        elif 1200 <= duration <= 5400 and volume >= 40:
            category, confidence = EventCategory.WASHING_MACHINE, 55
        elif duration <= 600 and volume <= 20:
            category, confidence = EventCategory.FAUCET, 65
        else:
            category, confidence = EventCategory.OTHER, 40

        return CategoryResult(
            category=category.value,
            confidence=confidence,
            reasoning=(
                f"{duration:.0f}s, {volume:.1f} L, peak {peak:.1f} L/min, "
                f"mean {mean:.1f} L/min"
            ),
        )

    def detect_anomaly(self, flow_data: Sequence[FlowSample]) -> AnomalyResult:
        duration, _, _, _ = self._profile_metrics(flow_data)
        if duration >= self.CONTINUOUS_FLOW_LEAK_SECONDS:
            return AnomalyResult(
                anomalies=[
                    AnomalyFinding(
                        type=AnomalyType.POSSIBLE_LEAK.value,
                        severity="medium",
                        start=flow_data[0].time,
                        end=flow_data[-1].time,
                    )
                ],
                details="Continuous flow for over two hours.",
            )
        return AnomalyResult()

    def analyze_chain(self, events: Sequence[WaterEventRecord]) -> ChainAnalysis:
        ordered = sorted(events, key=lambda e: e.start_time)
        for previous, current in zip(ordered, ordered[1:], strict=False):
            gap = (current.start_time - previous.end_time).total_seconds()
            if gap > self.CHAIN_MAX_GAP_SECONDS:
                return ChainAnalysis(
                    explanation="Events are more than 30 minutes apart."
                )

        categories = [e.category for e in ordered]
        for chain_type, pattern in self.CHAIN_PATTERNS:
            remaining = iter(categories)
            if all(step in remaining for step in pattern):
                return ChainAnalysis(
                    is_chain=True,
                    chain_type=chain_type,
                    explanation=f"Sequence {' -> '.join(categories)} matches {chain_type}.",
                )
        return ChainAnalysis(explanation="No known activity pattern matches.")


# ============================================================================
# Adapter
# ============================================================================


class ClassifierAdapter:
    """
    Timeout-bounded, failure-absorbing front for a ClassifierBackend.

    Example:
        >>> adapter = ClassifierAdapter(RuleBasedClassifierBackend())
        >>> result = adapter.classify(event.flow_data)
        >>> if result.status is OutcomeStatus.UNAVAILABLE:
        ...     print("fallback:", result.error)
    """

    def __init__(
        self,
        backend: ClassifierBackend,
        timeout_seconds: float = CC.DEFAULT_TIMEOUT_SECONDS,
        max_workers: int = CC.MAX_WORKERS,
    ):
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="classifier"
        )

    def _call(self, operation: str, fn: Any, *args: Any) -> Any:
        """Run a backend call with the timeout; raise ClassificationUnavailable on failure."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as e:
            future.cancel()
            raise ClassificationUnavailable(
                f"{operation} timed out after {self.timeout_seconds}s"
            ) from e
        except ClassificationUnavailable:
            raise
        except Exception as e:
            raise ClassificationUnavailable(f"{operation} failed: {e}") from e

    def classify(self, flow_data: Sequence[FlowSample]) -> CategoryResult:
        """Category for a flow profile; fallback values when the backend fails."""
        try:
            return self._call("classify", self.backend.classify, list(flow_data))
        except ClassificationUnavailable as e:
            logger.warning(f"Classification unavailable ({self.backend.name}): {e}")
            return CategoryResult.fallback(str(e))

    def detect_anomaly(self, flow_data: Sequence[FlowSample]) -> AnomalyResult:
        """Local heuristics first, then the backend; fallback on failure."""
        local = detect_local_anomaly(flow_data)
        if local is not None:
            logger.info(f"Heuristic anomaly: {local.anomalies[0].type}")
            return local

        try:
            return self._call("detect_anomaly", self.backend.detect_anomaly, list(flow_data))
        except ClassificationUnavailable as e:
            logger.warning(f"Anomaly detection unavailable ({self.backend.name}): {e}")
            return AnomalyResult.fallback(str(e))

    def analyze_chain(self, events: Sequence[WaterEventRecord]) -> ChainAnalysis:
        """Whether events form one activity; needs at least two events."""
        if len(events) < 2:
            return ChainAnalysis(
                explanation="At least two events are needed to form a chain.",
                status=OutcomeStatus.HEURISTIC,
            )
        try:
            return self._call("analyze_chain", self.backend.analyze_chain, list(events))
        except ClassificationUnavailable as e:
            logger.warning(f"Chain analysis unavailable ({self.backend.name}): {e}")
            return ChainAnalysis(status=OutcomeStatus.UNAVAILABLE, error=str(e))

    def recommend(
        self,
        categories: Sequence[CategoryUsage],
        total_usage_ml: int,
        usage_comparison: int,
    ) -> list[Recommendation] | None:
        """Externally generated tips, or None when the backend cannot provide them."""
        try:
            return self._call(
                "recommend",
                self.backend.recommend,
                list(categories),
                total_usage_ml,
                usage_comparison,
            )
        except ClassificationUnavailable as e:
            logger.debug(f"External recommendations unavailable: {e}")
            return None

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def build_classifier_adapter(
    config: ClassifierConfig, allow_ai_analysis: bool = True
) -> ClassifierAdapter:
    """
    Build an adapter for the configured backend.

    Args:
        config: Classifier configuration
        allow_ai_analysis: Owner consent; when False the rule backend is used

    Returns:
        ClassifierAdapter wrapping the selected backend
    """
    backend: ClassifierBackend
    if config.backend == "llm" and allow_ai_analysis:
        client = ChatCompletionClient(
            api_base=config.api_base,
            model=config.model,
            api_key=config.get_api_key(),
            timeout=config.timeout_seconds,
        )
        backend = LLMClassifierBackend(client)
    else:
        backend = RuleBasedClassifierBackend()
    return ClassifierAdapter(backend, timeout_seconds=config.timeout_seconds)
