"""Token log-probability based trust scoring for LLM outputs.

The validator turns the per-token log-probabilities returned by a chat
completion into a calibrated score, a coarse confidence level and an
uncertainty classification. Downstream code gates on ``is_valid``.

Entropy here is a proxy: only the sampled token's probability is known per
position, so each position contributes ``-p * ln(p)`` of that token alone. It
is not the entropy of the full next-token distribution. Each term is at most
1/e (about 0.37), so with the default thresholds the entropy penalty, the
entropy veto, the ``certain_max_entropy`` check and all but the two lowest
entropy bands never fire. Lower those thresholds to make entropy count.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
import math
from typing import Sequence

from clinical_kb.services.rag.types import TokenUsage


class ConfidenceLevel(IntEnum):
    UNCERTAIN = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CERTAIN = 4


class UncertaintyType(str, Enum):
    NONE = "none"
    FOCAL = "focal"
    DIFFUSE = "diffuse"


UNCERTAINTY_REASONS = {
    UncertaintyType.NONE: "High confidence across all tokens.",
    UncertaintyType.FOCAL: (
        "Model is confident globally but stumbled on specific terms (rare names or typos)."
    ),
    UncertaintyType.DIFFUSE: (
        "Multiple low-confidence tokens detected. "
        "Model likely lost context or is hallucinating broadly."
    ),
}


@dataclass(frozen=True)
class TokenLogProb:
    token: str
    logprob: float

    @property
    def probability(self) -> float:
        return math.exp(self.logprob)


@dataclass(frozen=True)
class ConfidenceThresholds:
    weak_token_probability: float = 0.35
    focal_max_count: int = 3
    focal_max_fraction: float = 0.10
    listed_weak_tokens: int = 5

    length_alpha: float = 0.65
    length_exponent: float = 0.15

    high_perplexity: float = 5.0
    high_entropy: float = 1.2
    weak_token_count_limit: int = 7
    weak_token_run_limit: int = 5
    perplexity_penalty: float = 0.6
    entropy_penalty: float = 0.75
    weak_token_penalty: float = 0.8
    diffuse_penalty: float = 0.5

    min_valid_score: float = 0.55

    certain_score: float = 0.85
    high_score: float = 0.65
    medium_score: float = 0.5
    low_score: float = 0.3
    veto_perplexity: float = 10.0
    veto_entropy: float = 2.0
    certain_max_perplexity: float = 2.0
    certain_max_entropy: float = 0.4

    # upper bounds of the Certain, High, Medium and Low bands
    perplexity_bands: tuple[float, float, float, float] = (1.5, 3.0, 6.0, 15.0)
    entropy_bands: tuple[float, float, float, float] = (0.2, 0.6, 1.2, 2.0)


@dataclass(frozen=True)
class ConfidenceMetrics:
    token_count: int
    mean_logprob: float
    intrinsic_confidence: float
    perplexity: float
    entropy: float
    length_penalty: float
    length_factor: float
    weakest_token: str | None
    weakest_probability: float
    perplexity_level: ConfidenceLevel
    entropy_level: ConfidenceLevel


@dataclass(frozen=True)
class UncertaintyAnalysis:
    type: UncertaintyType
    weak_token_count: int
    weak_fraction: float
    longest_weak_run: int
    weakest_tokens: list[TokenLogProb]
    reason: str


@dataclass(frozen=True)
class ConfidenceValidationResult:
    score: float
    is_valid: bool
    level: ConfidenceLevel
    metrics: ConfidenceMetrics
    uncertainty: UncertaintyAnalysis
    details: list[str] = field(default_factory=list)
    usage: TokenUsage = TokenUsage()


def _is_noise(token: str) -> bool:
    return not any(char.isalnum() for char in token)


def _band(value: float, bands: tuple[float, float, float, float]) -> ConfidenceLevel:
    certain, high, medium, low = bands
    if value < certain:
        return ConfidenceLevel.CERTAIN
    if value < high:
        return ConfidenceLevel.HIGH
    if value < medium:
        return ConfidenceLevel.MEDIUM
    if value < low:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.UNCERTAIN


def _longest_run(flags: list[bool]) -> int:
    longest = current = 0
    for flag in flags:
        current = current + 1 if flag else 0
        longest = max(longest, current)
    return longest


class ConfidenceValidator:
    def __init__(self, thresholds: ConfidenceThresholds | None = None) -> None:
        self._thresholds = thresholds or ConfidenceThresholds()

    def validate(
        self,
        tokens: Sequence[TokenLogProb] | None,
        *,
        usage: TokenUsage | None = None,
    ) -> ConfidenceValidationResult:
        usage = usage or TokenUsage()
        if not tokens:
            return self._empty_result(usage, detail="no log-probabilities")

        meaningful = [token for token in tokens if not _is_noise(token.token)]
        if not meaningful:
            return self._empty_result(usage, detail="only punctuation or whitespace tokens")

        t = self._thresholds
        metrics = self._metrics(meaningful)
        uncertainty = self._uncertainty(meaningful)

        details: list[str] = []
        base_score = math.exp(metrics.mean_logprob * metrics.length_factor)
        score = base_score

        if metrics.perplexity > t.high_perplexity:
            score *= t.perplexity_penalty
            details.append(
                f"perplexity {metrics.perplexity:.2f} above {t.high_perplexity} "
                f"(x{t.perplexity_penalty})"
            )
        if metrics.entropy > t.high_entropy:
            score *= t.entropy_penalty
            details.append(
                f"entropy {metrics.entropy:.2f} above {t.high_entropy} (x{t.entropy_penalty})"
            )
        if (
            uncertainty.weak_token_count > t.weak_token_count_limit
            or uncertainty.longest_weak_run >= t.weak_token_run_limit
        ):
            score *= t.weak_token_penalty
            details.append(
                f"{uncertainty.weak_token_count} weak tokens, longest run "
                f"{uncertainty.longest_weak_run} (x{t.weak_token_penalty})"
            )
        if uncertainty.type is UncertaintyType.DIFFUSE:
            score *= t.diffuse_penalty
            details.append(f"diffuse uncertainty (x{t.diffuse_penalty})")

        score = min(1.0, max(0.0, score))
        level = self._final_level(score, metrics)
        is_valid = score >= t.min_valid_score and metrics.perplexity_level is not ConfidenceLevel.UNCERTAIN

        return ConfidenceValidationResult(
            score=score,
            is_valid=is_valid,
            level=level,
            metrics=metrics,
            uncertainty=uncertainty,
            details=details,
            usage=usage,
        )

    def _metrics(self, tokens: list[TokenLogProb]) -> ConfidenceMetrics:
        t = self._thresholds
        count = len(tokens)
        mean_logprob = sum(token.logprob for token in tokens) / count
        entropy = sum(-token.probability * token.logprob for token in tokens) / count
        perplexity = math.exp(-mean_logprob)

        length_penalty = ((5 + count) ** t.length_alpha) / (6**t.length_alpha)
        length_factor = math.exp(-t.length_exponent * math.log(length_penalty))

        weakest = min(tokens, key=lambda token: token.logprob)
        return ConfidenceMetrics(
            token_count=count,
            mean_logprob=mean_logprob,
            intrinsic_confidence=math.exp(mean_logprob),
            perplexity=perplexity,
            entropy=entropy,
            length_penalty=length_penalty,
            length_factor=length_factor,
            weakest_token=weakest.token,
            weakest_probability=weakest.probability,
            perplexity_level=_band(perplexity, t.perplexity_bands),
            entropy_level=_band(entropy, t.entropy_bands),
        )

    def _uncertainty(self, tokens: list[TokenLogProb]) -> UncertaintyAnalysis:
        t = self._thresholds
        flags = [token.probability < t.weak_token_probability for token in tokens]
        weak = sorted(
            (token for token, is_weak in zip(tokens, flags) if is_weak),
            key=lambda token: token.logprob,
        )
        weak_fraction = len(weak) / len(tokens)

        if not weak:
            kind = UncertaintyType.NONE
        elif len(weak) <= t.focal_max_count and weak_fraction < t.focal_max_fraction:
            kind = UncertaintyType.FOCAL
        else:
            kind = UncertaintyType.DIFFUSE

        return UncertaintyAnalysis(
            type=kind,
            weak_token_count=len(weak),
            weak_fraction=weak_fraction,
            longest_weak_run=_longest_run(flags),
            weakest_tokens=weak[: t.listed_weak_tokens],
            reason=UNCERTAINTY_REASONS[kind],
        )

    def _final_level(self, score: float, metrics: ConfidenceMetrics) -> ConfidenceLevel:
        t = self._thresholds
        if score >= t.certain_score:
            level = ConfidenceLevel.CERTAIN
        elif score >= t.high_score:
            level = ConfidenceLevel.HIGH
        elif score >= t.medium_score:
            level = ConfidenceLevel.MEDIUM
        elif score >= t.low_score:
            level = ConfidenceLevel.LOW
        else:
            level = ConfidenceLevel.UNCERTAIN

        if metrics.perplexity > t.veto_perplexity or metrics.entropy > t.veto_entropy:
            level = min(level, ConfidenceLevel.LOW)

        if level is ConfidenceLevel.CERTAIN and (
            metrics.perplexity > t.certain_max_perplexity
            or metrics.entropy > t.certain_max_entropy
            or metrics.weakest_probability < t.weak_token_probability
        ):
            level = ConfidenceLevel.HIGH

        return level

    def _empty_result(self, usage: TokenUsage, *, detail: str) -> ConfidenceValidationResult:
        return ConfidenceValidationResult(
            score=0.0,
            is_valid=False,
            level=ConfidenceLevel.UNCERTAIN,
            metrics=ConfidenceMetrics(
                token_count=0,
                mean_logprob=float("-inf"),
                intrinsic_confidence=0.0,
                perplexity=float("inf"),
                entropy=float("inf"),
                length_penalty=1.0,
                length_factor=1.0,
                weakest_token=None,
                weakest_probability=0.0,
                perplexity_level=ConfidenceLevel.UNCERTAIN,
                entropy_level=ConfidenceLevel.UNCERTAIN,
            ),
            uncertainty=UncertaintyAnalysis(
                type=UncertaintyType.DIFFUSE,
                weak_token_count=0,
                weak_fraction=0.0,
                longest_weak_run=0,
                weakest_tokens=[],
                reason="No usable log-probabilities to assess.",
            ),
            details=[detail],
            usage=usage,
        )
