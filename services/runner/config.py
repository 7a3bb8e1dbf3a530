"""
Runner Configuration

Environment-driven settings for the WASM KV runner.

Environment:
- RUNNER_MODULE_PATH               path to the precompiled guest module (.wasm)
- RUNNER_DATASTORE                 "memory" (default) or "dynamodb"
- RUNNER_DYNAMODB_TABLE            table name for the dynamodb backend
- RUNNER_DYNAMODB_ENDPOINT         optional endpoint override (local DynamoDB)
- RUNNER_DYNAMODB_KEY_ATTRIBUTE    partition key attribute name (default "key")
- RUNNER_DYNAMODB_VALUE_ATTRIBUTE  value attribute name (default "value")
- RUNNER_DYNAMODB_KEY_TYPE         "B" (binary, default) or "S" (string, lossy)
- RUNNER_DYNAMODB_CONSISTENT_READ  "true" (default) or "false"
- AWS_REGION                       region for the dynamodb backend
- RUNNER_FUEL_LIMIT                optional wasm fuel budget per request
- RUNNER_CONTENT_TYPE              content type of responses (default text/html)
- RUNNER_MEMORY_SEED               JSON object of UTF-8 strings preloaded into every
                                   in-memory store (default {"foo": "bar"})
"""
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

DEFAULT_MODULE_PATH = "guest/target/wasm32-unknown-unknown/release/guest.wasm"
DEFAULT_SEED = {b"foo": b"bar"}

DATASTORE_BACKENDS = ("memory", "dynamodb")
DYNAMODB_KEY_TYPES = ("B", "S")


class ConfigError(ValueError):
    """Raised for invalid configuration values."""
    pass


@dataclass
class RunnerConfig:
    """Configuration for module loading, datastore selection and responses."""
    module_path: str = DEFAULT_MODULE_PATH
    datastore_backend: str = "memory"
    dynamodb_table: Optional[str] = None
    dynamodb_endpoint: Optional[str] = None
    dynamodb_key_attribute: str = "key"
    dynamodb_value_attribute: str = "value"
    dynamodb_key_type: str = "B"
    dynamodb_consistent_read: bool = True
    aws_region: Optional[str] = None
    fuel_limit: Optional[int] = None
    content_type: str = "text/html"
    memory_seed: Dict[bytes, bytes] = field(default_factory=lambda: dict(DEFAULT_SEED))

    def __post_init__(self):
        if self.datastore_backend not in DATASTORE_BACKENDS:
            raise ConfigError(
                f"Unknown datastore backend {self.datastore_backend!r}, "
                f"expected one of {', '.join(DATASTORE_BACKENDS)}"
            )
        if self.datastore_backend == "dynamodb" and not self.dynamodb_table:
            raise ConfigError("RUNNER_DYNAMODB_TABLE is required for the dynamodb backend")
        if self.dynamodb_key_type not in DYNAMODB_KEY_TYPES:
            raise ConfigError(
                f"RUNNER_DYNAMODB_KEY_TYPE must be one of {', '.join(DYNAMODB_KEY_TYPES)}, "
                f"got {self.dynamodb_key_type!r}"
            )
        if not self.dynamodb_key_attribute or not self.dynamodb_value_attribute:
            raise ConfigError("DynamoDB attribute names must not be empty")
        if self.fuel_limit is not None and self.fuel_limit <= 0:
            raise ConfigError("fuel_limit must be positive")

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        fuel = os.getenv("RUNNER_FUEL_LIMIT")
        try:
            fuel_limit = int(fuel) if fuel else None
        except ValueError:
            raise ConfigError(f"RUNNER_FUEL_LIMIT must be an integer, got {fuel!r}")

        consistent = os.getenv("RUNNER_DYNAMODB_CONSISTENT_READ", "true").lower()
        if consistent not in ("true", "false"):
            raise ConfigError(f"RUNNER_DYNAMODB_CONSISTENT_READ must be true or false, got {consistent!r}")

        return cls(
            module_path=os.getenv("RUNNER_MODULE_PATH", DEFAULT_MODULE_PATH),
            datastore_backend=os.getenv("RUNNER_DATASTORE", "memory"),
            dynamodb_table=os.getenv("RUNNER_DYNAMODB_TABLE"),
            dynamodb_endpoint=os.getenv("RUNNER_DYNAMODB_ENDPOINT"),
            dynamodb_key_attribute=os.getenv("RUNNER_DYNAMODB_KEY_ATTRIBUTE", "key"),
            dynamodb_value_attribute=os.getenv("RUNNER_DYNAMODB_VALUE_ATTRIBUTE", "value"),
            dynamodb_key_type=os.getenv("RUNNER_DYNAMODB_KEY_TYPE", "B"),
            dynamodb_consistent_read=consistent == "true",
            aws_region=os.getenv("AWS_REGION"),
            fuel_limit=fuel_limit,
            content_type=os.getenv("RUNNER_CONTENT_TYPE", "text/html"),
            memory_seed=parse_seed(os.getenv("RUNNER_MEMORY_SEED"))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_path": self.module_path,
            "datastore_backend": self.datastore_backend,
            "dynamodb_table": self.dynamodb_table,
            "dynamodb_key_type": self.dynamodb_key_type,
            "aws_region": self.aws_region,
            "fuel_limit": self.fuel_limit,
            "content_type": self.content_type,
            "memory_seed_keys": len(self.memory_seed)
        }


def parse_seed(raw: Optional[str]) -> Dict[bytes, bytes]:
    """Parse RUNNER_MEMORY_SEED into a bytes mapping."""
    if raw is None:
        return dict(DEFAULT_SEED)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"RUNNER_MEMORY_SEED is not valid JSON: {e}")
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise ConfigError("RUNNER_MEMORY_SEED must be a JSON object of strings")
    return {k.encode("utf-8"): v.encode("utf-8") for k, v in data.items()}
