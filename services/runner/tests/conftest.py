"""
Shared Test Fixtures for the WASM KV Runner
"""
import pytest
from unittest.mock import MagicMock

from config import RunnerConfig
from datastore import InMemoryDatastore
from guest import build_module_wat, compile_guest, example_module
from sandbox import WasmRunner


@pytest.fixture
def seeded_store():
    """In-memory store preloaded with foo -> bar."""
    return InMemoryDatastore(seed={b"foo": b"bar"})


@pytest.fixture
def write_module(tmp_path):
    """Compile guest WAT (a full module or just entry functions) to a .wasm file."""
    counter = {"n": 0}

    def _write(wat: str, data=(), raw: bool = False, **kwargs) -> str:
        counter["n"] += 1
        source = wat if raw else build_module_wat(wat, data, **kwargs)
        path = tmp_path / f"guest_{counter['n']}.wasm"
        path.write_bytes(bytes(compile_guest(source)))
        return str(path)

    return _write


@pytest.fixture
def example_module_path(tmp_path):
    path = tmp_path / "example.wasm"
    path.write_bytes(bytes(example_module()))
    return str(path)


@pytest.fixture
def make_runner():
    """Runner factory over a module path."""
    def _make(module_path: str, **kwargs) -> WasmRunner:
        return WasmRunner(RunnerConfig(module_path=module_path, **kwargs))
    return _make


@pytest.fixture
def example_runner(example_module_path, make_runner):
    return make_runner(example_module_path)


@pytest.fixture
def mock_dynamodb_client():
    """Create mock boto3 DynamoDB client."""
    client = MagicMock()
    client.put_item.return_value = {}
    client.get_item.return_value = {}
    return client
