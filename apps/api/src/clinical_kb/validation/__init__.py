from clinical_kb.validation.confidence import (
    ConfidenceLevel,
    ConfidenceThresholds,
    ConfidenceValidationResult,
    ConfidenceValidator,
    TokenLogProb,
    UncertaintyType,
)

__all__ = [
    "ConfidenceLevel",
    "ConfidenceThresholds",
    "ConfidenceValidationResult",
    "ConfidenceValidator",
    "TokenLogProb",
    "UncertaintyType",
]
