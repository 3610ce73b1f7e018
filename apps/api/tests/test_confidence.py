import math

import pytest

from clinical_kb.services.rag.types import TokenUsage
from clinical_kb.validation import (
    ConfidenceLevel,
    ConfidenceThresholds,
    ConfidenceValidator,
    TokenLogProb,
    UncertaintyType,
)


def _tokens(*logprobs: float) -> list[TokenLogProb]:
    return [TokenLogProb(token=f"tok{index}", logprob=value) for index, value in enumerate(logprobs)]


def test_uniformly_confident_output_scores_high() -> None:
    result = ConfidenceValidator().validate(_tokens(*([-0.01] * 50)))

    assert result.score > 0.9
    assert result.level in {ConfidenceLevel.HIGH, ConfidenceLevel.CERTAIN}
    assert result.is_valid
    assert result.uncertainty.type is UncertaintyType.NONE
    assert result.uncertainty.reason == "High confidence across all tokens."
    assert result.uncertainty.weakest_tokens == []
    assert result.details == []


def test_single_stumble_is_focal_and_lowers_score() -> None:
    validator = ConfidenceValidator()
    clean = validator.validate(_tokens(*([-0.01] * 50)))

    result = validator.validate(_tokens(*([-0.01] * 49 + [-4.0])))

    assert result.uncertainty.type is UncertaintyType.FOCAL
    assert result.score < clean.score - 0.03
    assert result.level >= ConfidenceLevel.MEDIUM
    # a single very weak token blocks the top level
    assert result.level is ConfidenceLevel.HIGH
    assert result.is_valid
    assert [token.token for token in result.uncertainty.weakest_tokens] == ["tok49"]
    assert result.metrics.weakest_token == "tok49"
    assert result.metrics.weakest_probability == pytest.approx(math.exp(-4.0))


def test_widespread_weak_tokens_are_diffuse_and_invalid() -> None:
    result = ConfidenceValidator().validate(_tokens(*([-0.01] * 20 + [-2.0] * 30)))

    assert result.uncertainty.type is UncertaintyType.DIFFUSE
    assert result.uncertainty.weak_token_count == 30
    assert len(result.uncertainty.weakest_tokens) == 5
    assert not result.is_valid
    assert any("diffuse" in detail for detail in result.details)
    assert any("weak tokens" in detail for detail in result.details)


@pytest.mark.parametrize("tokens", [None, []])
def test_missing_logprobs_return_fixed_fallback(tokens: list[TokenLogProb] | None) -> None:
    result = ConfidenceValidator().validate(tokens, usage=TokenUsage(input_tokens=3, total_tokens=9))

    assert result.score == 0.0
    assert not result.is_valid
    assert result.level is ConfidenceLevel.UNCERTAIN
    assert math.isinf(result.metrics.perplexity)
    assert result.details == ["no log-probabilities"]
    assert result.usage == TokenUsage(input_tokens=3, total_tokens=9)


def test_punctuation_only_output_is_uncertain() -> None:
    tokens = [TokenLogProb(token=token, logprob=-0.01) for token in ['{"', ",", " ", "}", "\n"]]

    result = ConfidenceValidator().validate(tokens)

    assert result.score == 0.0
    assert not result.is_valid
    assert result.level is ConfidenceLevel.UNCERTAIN


def test_punctuation_tokens_are_ignored_in_scoring() -> None:
    noisy = _tokens(*([-0.01] * 40)) + [TokenLogProb(token=",", logprob=-6.0)] * 3

    result = ConfidenceValidator().validate(noisy)

    assert result.metrics.token_count == 40
    assert result.uncertainty.type is UncertaintyType.NONE
    assert result.level is ConfidenceLevel.CERTAIN


def test_single_token_has_no_length_adjustment() -> None:
    result = ConfidenceValidator().validate(_tokens(-0.2))

    assert result.metrics.length_penalty == pytest.approx(1.0)
    assert result.metrics.length_factor == pytest.approx(1.0)
    assert result.score == pytest.approx(math.exp(-0.2))


def test_high_perplexity_caps_level_and_is_reported() -> None:
    result = ConfidenceValidator().validate(_tokens(*([-2.5] * 20)))

    assert result.metrics.perplexity > 10
    assert result.level <= ConfidenceLevel.LOW
    assert result.metrics.perplexity_level is ConfidenceLevel.LOW
    assert any(detail.startswith("perplexity") for detail in result.details)
    assert not result.is_valid


def test_perplexity_veto_caps_a_certain_score_at_low() -> None:
    tokens = _tokens(*([-0.01] * 50))

    default = ConfidenceValidator().validate(tokens)
    capped = ConfidenceValidator(ConfidenceThresholds(veto_perplexity=1.005)).validate(tokens)

    assert default.level is ConfidenceLevel.CERTAIN
    assert capped.metrics.perplexity > 1.005
    assert capped.score == pytest.approx(default.score)
    assert capped.score >= 0.85
    assert capped.level is ConfidenceLevel.LOW
    assert capped.is_valid


def test_entropy_veto_caps_level_at_low() -> None:
    tokens = _tokens(*([-0.01] * 50))

    capped = ConfidenceValidator(ConfidenceThresholds(veto_entropy=0.005)).validate(tokens)

    assert capped.metrics.entropy > 0.005
    assert capped.level is ConfidenceLevel.LOW


def test_entropy_proxy_stays_below_one_over_e() -> None:
    tokens = _tokens(*([-1.0] * 30))

    result = ConfidenceValidator().validate(tokens)

    assert result.metrics.entropy == pytest.approx(1 / math.e)
    assert not any(detail.startswith("entropy") for detail in result.details)


def test_long_run_of_weak_tokens_is_penalized() -> None:
    thresholds = ConfidenceThresholds(focal_max_count=10, focal_max_fraction=0.5)
    tokens = _tokens(*([-0.01] * 45 + [-1.5] * 5))

    penalized = ConfidenceValidator(thresholds).validate(tokens)
    unpenalized = ConfidenceValidator(
        ConfidenceThresholds(focal_max_count=10, focal_max_fraction=0.5, weak_token_run_limit=6)
    ).validate(tokens)

    assert penalized.uncertainty.longest_weak_run == 5
    assert penalized.uncertainty.type is UncertaintyType.FOCAL
    assert penalized.score == pytest.approx(unpenalized.score * 0.8)


def test_thresholds_are_tunable() -> None:
    tokens = _tokens(*([-0.01] * 50))

    strict = ConfidenceValidator(ConfidenceThresholds(min_valid_score=0.999)).validate(tokens)
    default = ConfidenceValidator().validate(tokens)

    assert default.is_valid
    assert not strict.is_valid
    assert strict.score == pytest.approx(default.score)


def test_levels_order_from_uncertain_to_certain() -> None:
    assert (
        ConfidenceLevel.UNCERTAIN
        < ConfidenceLevel.LOW
        < ConfidenceLevel.MEDIUM
        < ConfidenceLevel.HIGH
        < ConfidenceLevel.CERTAIN
    )
