"""Validation aggregation."""

from agentledger.validation.aggregator import AggregationDecision, AggregationPolicy, aggregate

__all__ = ["AggregationDecision", "AggregationPolicy", "aggregate"]
