"""Learning module: context capture, analysis, effectiveness tracking and adaptive tuning."""

from hooklearn.learning.adaptive import (
    AdaptiveParameterSystem,
    ParameterSpec,
    Proposal,
    ResolvedParameters,
)
from hooklearn.learning.analyzer import AnalysisReport, PatternAnalyzer
from hooklearn.learning.context import ExecutionFacts, PatternKey, PatternType, capture_context
from hooklearn.learning.effectiveness import PatternEffectivenessTracker
from hooklearn.learning.feedback import CheckpointAction, FeedbackLoopMonitor
from hooklearn.learning.orchestrator import (
    LearningOrchestrator,
    LearningStatistics,
    current_parameters,
)
from hooklearn.learning.store import LearningStore

__all__ = [
    # Orchestration
    "LearningOrchestrator",
    "LearningStatistics",
    "current_parameters",
    # Context
    "ExecutionFacts",
    "PatternKey",
    "PatternType",
    "capture_context",
    # Analysis and tracking
    "AnalysisReport",
    "PatternAnalyzer",
    "PatternEffectivenessTracker",
    # Tuning
    "AdaptiveParameterSystem",
    "CheckpointAction",
    "FeedbackLoopMonitor",
    "ParameterSpec",
    "Proposal",
    "ResolvedParameters",
    # Storage
    "LearningStore",
]
