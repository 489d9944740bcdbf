"""
Domain enums with attached behavior.
"""

from enum import StrEnum


class OccurrenceSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> float:
        """Numeric multiplier used by risk scoring (0.25 - 1.0)."""
        return _SEVERITY_WEIGHTS[self]

    @classmethod
    def parse(cls, value, default: "OccurrenceSeverity | None" = None) -> "OccurrenceSeverity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            if default is None:
                raise
            return default


_SEVERITY_WEIGHTS = {
    OccurrenceSeverity.LOW: 0.25,
    OccurrenceSeverity.MEDIUM: 0.5,
    OccurrenceSeverity.HIGH: 0.75,
    OccurrenceSeverity.CRITICAL: 1.0,
}


class OccurrenceStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REJECTED = "rejected"
    MERGED = "merged"

    @property
    def is_visible(self) -> bool:
        return self is OccurrenceStatus.ACTIVE

    @property
    def is_final(self) -> bool:
        return self in (OccurrenceStatus.REJECTED, OccurrenceStatus.MERGED)


class OccurrenceSource(StrEnum):
    COLLABORATIVE = "collaborative"
    OFFICIAL = "official"

    @property
    def initial_confidence(self) -> int:
        return 5 if self is OccurrenceSource.OFFICIAL else 2

    @property
    def expires(self) -> bool:
        return self is OccurrenceSource.COLLABORATIVE


class RiskFactorType(StrEnum):
    FREQUENCY = "frequency"
    RECENCY = "recency"
    SEVERITY = "severity"
    CONFIDENCE = "confidence"

    @property
    def weight(self) -> float:
        return _FACTOR_WEIGHTS[self]


_FACTOR_WEIGHTS = {
    RiskFactorType.FREQUENCY: 0.30,
    RiskFactorType.RECENCY: 0.25,
    RiskFactorType.SEVERITY: 0.25,
    RiskFactorType.CONFIDENCE: 0.20,
}


class AlertType(StrEnum):
    HIGH_RISK_REGION = "high_risk_region"
    APPROACHING_HIGH_RISK = "approaching_high_risk"


class AlertSeverity(StrEnum):
    WARNING = "warning"
    HIGH = "high"
