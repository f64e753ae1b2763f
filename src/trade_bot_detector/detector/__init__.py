"""Detection layer - Behavioral scoring and bot classification."""

from trade_bot_detector.detector.classifier import (
    Classifier,
    ClassifierConfig,
    ClassifierError,
)
from trade_bot_detector.detector.models import (
    Category,
    ClassificationRecord,
    ClassificationStats,
    PublishState,
    RiskLevel,
    SignalName,
    SignalResult,
)
from trade_bot_detector.detector.signals import SignalConfig, analyze_liquidity, compute_signals

__all__ = [
    "Category",
    "ClassificationRecord",
    "ClassificationStats",
    "Classifier",
    "ClassifierConfig",
    "ClassifierError",
    "PublishState",
    "RiskLevel",
    "SignalConfig",
    "SignalName",
    "SignalResult",
    "analyze_liquidity",
    "compute_signals",
]
