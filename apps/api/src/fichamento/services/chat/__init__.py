from fichamento.services.chat.aggregator import DeltaAggregator
from fichamento.services.chat.sse import iter_stream_events
from fichamento.services.chat.types import ChatMessage, Summary

__all__ = ["ChatMessage", "DeltaAggregator", "Summary", "iter_stream_events"]
