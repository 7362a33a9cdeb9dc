"""
Fraud Analyzer

Turns a batch of stream events into qualified/fraud counts per creator.
Pure: no database access, no side effects. The fraud score itself comes
from the upstream event source.
"""
from collections import OrderedDict
from typing import Dict, Iterable

from ...errors import ValidationError
from ...models.domain import FraudAnalysis, StreamEventData


class FraudAnalyzer:
    """Counts qualified streams and those flagged above the fraud cutoff."""

    def __init__(self, fraud_cutoff: float = 0.7, min_qualified_seconds: float = 30.0):
        if not 0 <= fraud_cutoff <= 1:
            raise ValidationError(f"Fraud cutoff must be within [0, 1], got {fraud_cutoff}")
        self.fraud_cutoff = fraud_cutoff
        self.min_qualified_seconds = min_qualified_seconds

    def is_qualified(self, duration_seconds: float) -> bool:
        return duration_seconds >= self.min_qualified_seconds

    def analyze(self, events: Iterable[StreamEventData]) -> FraudAnalysis:
        """
        Count one creator's events for a period.

        An event's own `qualified` flag wins when the source supplied one;
        otherwise it is derived from the duration. Only qualified events can
        count as fraud streams.
        """
        analysis = FraudAnalysis()
        for event in events:
            self.validate_event(event)
            if not self.event_qualified(event):
                continue
            analysis.qualified_stream_count += 1
            if event.fraud_score > self.fraud_cutoff:
                analysis.fraud_stream_count += 1
        return analysis

    def analyze_by_creator(self, events: Iterable[StreamEventData]) -> Dict[str, FraudAnalysis]:
        """Group a mixed batch by creator and analyze each group."""
        grouped: Dict[str, list] = OrderedDict()
        for event in events:
            grouped.setdefault(event.creator_id, []).append(event)
        return {creator_id: self.analyze(batch) for creator_id, batch in grouped.items()}

    def event_qualified(self, event: StreamEventData) -> bool:
        if event.qualified is not None:
            return bool(event.qualified)
        return self.is_qualified(event.duration_seconds)

    @staticmethod
    def validate_event(event: StreamEventData) -> None:
        if event.fraud_score is None or not 0 <= event.fraud_score <= 1:
            raise ValidationError(
                f"Fraud score for creator {event.creator_id} must be within [0, 1], got {event.fraud_score}"
            )
