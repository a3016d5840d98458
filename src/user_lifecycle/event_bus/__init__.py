"""Event Bus adapters."""

from .kafka import KafkaPartitionReader, KafkaReaderConfig, PartitionMessage

__all__ = [
    "KafkaPartitionReader",
    "KafkaReaderConfig",
    "PartitionMessage",
]
