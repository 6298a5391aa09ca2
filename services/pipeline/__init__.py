"""Detection aggregation for media items."""

from services.pipeline.aggregator import DetectionAggregator

__all__ = ["DetectionAggregator"]
