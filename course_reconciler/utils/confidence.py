"""Confidence Score Validation and Statistics.

Provides functions for:
- Validating and normalizing confidence scores reported by the matching service
- Calculating confidence distribution statistics for a run's results
"""

from typing import Any, Optional

from course_reconciler.models.mapping import MappingResult
from course_reconciler.utils.logger import get_logger

HIGH_CONFIDENCE = 90


def validate_confidence_score(
    raw_confidence: Any, record_id: str, correlation_id: Optional[str] = None
) -> tuple[Optional[int], list[str]]:
    """Validate and normalize a confidence score from a matching response.

    Handles int, float and numeric strings; floats are rounded. Booleans,
    missing values and anything non-numeric cannot be scored and yield
    ``None``. Out-of-range values are clamped to 0-100.

    Args:
        raw_confidence: Confidence value from the response (any type)
        record_id: Source record id for logging
        correlation_id: Correlation ID for logging

    Returns:
        Tuple of (validated_confidence: int | None, flags: list[str])
        - validated_confidence: Integer in range 0-100, None if unusable
        - flags: "confidence_unparseable" or "confidence_out_of_range"
    """
    logger = get_logger(
        correlation_id=correlation_id,
        phase="validation",
        component="confidence",
    )

    flags: list[str] = []

    try:
        if isinstance(raw_confidence, bool):
            # bool is subclass of int, handle explicitly
            raise ValueError("Boolean type not valid for confidence")

        if isinstance(raw_confidence, (int, float)):
            confidence = int(round(float(raw_confidence)))
        elif isinstance(raw_confidence, str):
            confidence = int(round(float(raw_confidence.strip())))
        else:
            raise ValueError(f"Unsupported type: {type(raw_confidence)}")

    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(
            "Invalid confidence value",
            record_id=record_id,
            raw_value=str(raw_confidence)[:50],
            error=str(e),
        )
        flags.append("confidence_unparseable")
        return None, flags

    if confidence < 0:
        logger.warning(
            "Negative confidence returned, clamping to 0",
            confidence=confidence,
            record_id=record_id,
        )
        flags.append("confidence_out_of_range")
        return 0, flags

    if confidence > 100:
        logger.warning(
            "Confidence exceeds 100, clamping to 100",
            confidence=confidence,
            record_id=record_id,
        )
        flags.append("confidence_out_of_range")
        return 100, flags

    return confidence, flags


def calculate_confidence_stats(
    results: list[MappingResult],
    low_threshold: int = 75,
    high_threshold: int = HIGH_CONFIDENCE,
) -> dict[str, Any]:
    """Calculate confidence distribution statistics for mapping results.

    Categorizes results that carry a mapped code by confidence level:
    - High confidence (>= high_threshold)
    - Medium confidence (low_threshold to high_threshold - 1)
    - Low confidence (< low_threshold): requires review

    Args:
        results: Mapping results of one or more runs
        low_threshold: Lower bound of the medium band
        high_threshold: Lower bound of the high band

    Returns:
        Dict with per-method distributions and an overall assessment
    """
    logger = get_logger(
        correlation_id="confidence-stats",
        phase="session",
        component="confidence",
    )

    scored = [r for r in results if r.mapped_code is not None]

    def categorize(items: list[MappingResult]) -> dict[str, int]:
        high = sum(1 for r in items if r.confidence >= high_threshold)
        medium = sum(1 for r in items if low_threshold <= r.confidence < high_threshold)
        low = sum(1 for r in items if r.confidence < low_threshold)
        return {"high": high, "medium": medium, "low": low, "total": len(items)}

    overall = categorize(scored)
    by_method = {
        method: categorize([r for r in scored if r.match_method.value == method])
        for method in sorted({r.match_method.value for r in scored})
    }

    low_percentage = (overall["low"] / len(scored) * 100) if scored else 0.0

    if low_percentage > 30:
        logger.warning(
            "High proportion of low-confidence mappings detected",
            low_confidence_percentage=f"{low_percentage:.1f}%",
        )
        quality_assessment = "Warning - many low-confidence mappings need review"
    elif scored:
        quality_assessment = "Good"
    else:
        quality_assessment = "No mapped results"

    stats = {
        "total_results": len(results),
        "scored_results": len(scored),
        "unmapped": len(results) - len(scored),
        "overall": overall,
        "by_method": by_method,
        "low_confidence_percentage": round(low_percentage, 1),
        "quality_assessment": quality_assessment,
    }

    logger.info(
        "Confidence distribution calculated",
        total=len(results),
        high=overall["high"],
        medium=overall["medium"],
        low=overall["low"],
        low_percentage=f"{low_percentage:.1f}%",
    )

    return stats
