"""
Datastore Package - Capability Stores

Key-value backends reachable by guest modules through host bindings.
"""
from config import RunnerConfig

from .base import Datastore, DatastoreError
from .dynamodb import DynamoDBConfig, DynamoDBDatastore
from .memory import InMemoryDatastore


def create_datastore(config: RunnerConfig) -> Datastore:
    """
    Build the datastore selected by `config`.

    The in-memory backend is rebuilt on every call so no state is shared
    between requests. The DynamoDB backend is the only source of
    cross-request persistence.
    """
    if config.datastore_backend == "dynamodb":
        return DynamoDBDatastore.from_config(DynamoDBConfig(
            table_name=config.dynamodb_table,
            region_name=config.aws_region,
            endpoint_url=config.dynamodb_endpoint,
            key_attribute=config.dynamodb_key_attribute,
            value_attribute=config.dynamodb_value_attribute,
            key_type=config.dynamodb_key_type,
            consistent_read=config.dynamodb_consistent_read
        ))
    return InMemoryDatastore(seed=config.memory_seed)


__all__ = [
    "Datastore",
    "DatastoreError",
    "InMemoryDatastore",
    "DynamoDBConfig",
    "DynamoDBDatastore",
    "create_datastore"
]
