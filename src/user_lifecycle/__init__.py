"""
User lifecycle consumer.

Reads user create/update/remove events from one Kafka partition and writes
them to the Cassandra `user` table, checkpointing the partition offset after
every message.
"""

__all__: list[str] = []
