"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Lambda modules import each other by bare name
root = Path(__file__).parent.parent
sys.path.insert(0, str(root / "lambda"))
sys.path.insert(0, str(root / "scripts"))


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def set(self, key, value):
        self.ops.append((key, value))
        return self

    def exec(self):
        self.store.pipeline_sizes.append(len(self.ops))
        for key, value in self.ops:
            self.store.set(key, value)


class FakeStore:
    """In-memory store recording every call."""

    def __init__(self, data=None, failing_keys=()):
        self.data = dict(data or {})
        self.failing_keys = set(failing_keys)
        self.calls = []
        self.writes = []
        self.mget_sizes = []

    def get(self, key):
        self.calls.append(("get", key))
        return self.data.get(key)

    def mget(self, keys):
        from kv_store import READ_FAILED

        self.calls.append(("mget", list(keys)))
        self.mget_sizes.append(len(keys))
        return [READ_FAILED if k in self.failing_keys else self.data.get(k) for k in keys]

    def set(self, key, value):
        self.calls.append(("set", key))
        self.writes.append((key, value))
        self.data[key] = value


class FakePipelineStore(FakeStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.pipeline_sizes = []

    def pipeline(self):
        return FakePipeline(self)


class BrokenStore(FakeStore):
    def get(self, key):
        raise ConnectionError("store unreachable")


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pipeline_store():
    return FakePipelineStore()


@pytest.fixture
def aws_env(monkeypatch):
    """Dummy credentials so boto3 clients can be built offline."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    return os.environ
