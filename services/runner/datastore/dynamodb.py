"""
DynamoDB Capability Store

Durable backend that maps each guest key to one DynamoDB item:

    {<key_attribute>: {"B": <key>}, <value_attribute>: {"B": <value>}}

Guest keys are opaque bytes and are stored as a binary partition key, so two
keys share an item only if they are equal byte for byte. Tables with a string
partition key are supported with `key_type="S"`; keys are then decoded as
UTF-8 with replacement, and distinct invalid byte sequences can collide.
Values are stored untouched as a binary attribute. Table provisioning and
credentials are handled outside this service.

Any transport or service error is fatal to the request. No retries.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import DatastoreError

logger = logging.getLogger(__name__)

KEY_TYPES = ("B", "S")


@dataclass
class DynamoDBConfig:
    """Connection and item-shape settings for the DynamoDB backend."""
    table_name: str
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    key_attribute: str = "key"
    value_attribute: str = "value"
    key_type: str = "B"
    consistent_read: bool = True

    def __post_init__(self):
        if self.key_type not in KEY_TYPES:
            raise ValueError(f"key_type must be one of {', '.join(KEY_TYPES)}, got {self.key_type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "region_name": self.region_name,
            "endpoint_url": self.endpoint_url,
            "key_attribute": self.key_attribute,
            "value_attribute": self.value_attribute,
            "key_type": self.key_type,
            "consistent_read": self.consistent_read
        }


class DynamoDBDatastore:
    """
    Datastore backed by a DynamoDB table.

    Usage:
        store = DynamoDBDatastore.from_config(DynamoDBConfig(table_name="kv"))
        await store.put(b"foo", b"bar")
        value = await store.get(b"foo")  # b"bar"
    """

    backend = "dynamodb"

    def __init__(self, client, config: DynamoDBConfig):
        """
        Args:
            client: boto3 DynamoDB low-level client
            config: table name and attribute layout
        """
        self._client = client
        self.config = config

    @classmethod
    def from_config(cls, config: DynamoDBConfig) -> "DynamoDBDatastore":
        client = boto3.client(
            "dynamodb",
            region_name=config.region_name,
            endpoint_url=config.endpoint_url
        )
        return cls(client, config)

    def encode_key(self, key: bytes) -> Union[bytes, str]:
        if self.config.key_type == "S":
            return bytes(key).decode("utf-8", errors="replace")
        return bytes(key)

    def _key(self, key: bytes) -> Dict[str, Dict[str, Union[bytes, str]]]:
        return {self.config.key_attribute: {self.config.key_type: self.encode_key(key)}}

    async def put(self, key: bytes, value: bytes) -> None:
        item = self._key(key)
        item[self.config.value_attribute] = {"B": bytes(value)}
        try:
            await asyncio.to_thread(
                self._client.put_item,
                TableName=self.config.table_name,
                Item=item
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"DynamoDB put_item on {self.config.table_name} failed: {e}")
            raise DatastoreError("put", self.backend, str(e)) from e

    async def get(self, key: bytes) -> Optional[bytes]:
        try:
            response = await asyncio.to_thread(
                self._client.get_item,
                TableName=self.config.table_name,
                Key=self._key(key),
                ConsistentRead=self.config.consistent_read
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"DynamoDB get_item on {self.config.table_name} failed: {e}")
            raise DatastoreError("get", self.backend, str(e)) from e

        item = response.get("Item")
        if not item:
            return None
        attribute = item.get(self.config.value_attribute)
        if not attribute or "B" not in attribute:
            # present but not a binary value: treated as absent
            return None
        return bytes(attribute["B"])

    def __repr__(self) -> str:
        return f"DynamoDBDatastore(table={self.config.table_name!r})"
