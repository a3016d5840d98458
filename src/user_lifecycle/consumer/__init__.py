"""User lifecycle consumer: configuration, offset checkpoints and the partition worker."""

from .checkpoints import (
    CHECKPOINT_METADATA,
    OFFSET_NEWEST,
    OFFSET_OLDEST,
    KafkaGroupOffsetStore,
    PartitionOffsetManager,
    PostgresOffsetStore,
    SqliteOffsetStore,
    build_offset_store,
)
from .config import (
    OPERATION_CREATE,
    OPERATION_REMOVE,
    OPERATION_UPDATE,
    UserConsumerConfig,
    load_consumer_config,
)
from .worker import MessageResult, PipelineState, UserEventWorker, build_worker, main

__all__ = [
    "CHECKPOINT_METADATA",
    "KafkaGroupOffsetStore",
    "MessageResult",
    "OFFSET_NEWEST",
    "OFFSET_OLDEST",
    "OPERATION_CREATE",
    "OPERATION_REMOVE",
    "OPERATION_UPDATE",
    "PartitionOffsetManager",
    "PipelineState",
    "PostgresOffsetStore",
    "SqliteOffsetStore",
    "UserConsumerConfig",
    "UserEventWorker",
    "build_offset_store",
    "build_worker",
    "load_consumer_config",
    "main",
]
