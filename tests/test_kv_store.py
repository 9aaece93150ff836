import threading

import boto3
import pytest
from botocore.stub import Stubber

import kv_store
from kv_store import READ_FAILED, DynamoKeyValueStore, S3KeyValueStore, get_kv_store


@pytest.fixture
def dynamo(aws_env):
    client = boto3.client("dynamodb", region_name="us-east-1")
    with Stubber(client) as stubber:
        yield DynamoKeyValueStore("speeds", client=client), stubber
        stubber.assert_no_pending_responses()


def _item(key, value):
    return {"k": {"S": key}, "v": {"S": value}}


def test_dynamo_get(dynamo):
    store, stubber = dynamo
    stubber.add_response("get_item", {"Item": _item("a", "1")}, {"TableName": "speeds", "Key": {"k": {"S": "a"}}})
    stubber.add_response("get_item", {}, {"TableName": "speeds", "Key": {"k": {"S": "missing"}}})

    assert store.get("a") == "1"
    assert store.get("missing") is None


def test_dynamo_mget_restores_input_order(dynamo):
    store, stubber = dynamo
    stubber.add_response(
        "batch_get_item",
        {"Responses": {"speeds": [_item("c", "3"), _item("a", "1")]}, "UnprocessedKeys": {}},
        {"RequestItems": {"speeds": {"Keys": [{"k": {"S": "a"}}, {"k": {"S": "b"}}, {"k": {"S": "c"}}]}}},
    )

    assert store.mget(["a", "b", "c"]) == ["1", None, "3"]


def test_dynamo_mget_retries_unprocessed_keys(dynamo, monkeypatch):
    monkeypatch.setattr(kv_store.time, "sleep", lambda _s: None)
    monkeypatch.setattr(kv_store, "UNPROCESSED_RETRIES", 1)
    store, stubber = dynamo
    stubber.add_response(
        "batch_get_item",
        {"Responses": {"speeds": [_item("a", "1")]}, "UnprocessedKeys": {"speeds": {"Keys": [{"k": {"S": "b"}}]}}},
        {"RequestItems": {"speeds": {"Keys": [{"k": {"S": "a"}}, {"k": {"S": "b"}}]}}},
    )
    stubber.add_response(
        "batch_get_item",
        {"Responses": {"speeds": []}, "UnprocessedKeys": {"speeds": {"Keys": [{"k": {"S": "b"}}]}}},
        {"RequestItems": {"speeds": {"Keys": [{"k": {"S": "b"}}]}}},
    )

    # b never came back: it is a failed read, not an absent key
    assert store.mget(["a", "b"]) == ["1", READ_FAILED]


def test_dynamo_pipeline_is_one_transaction(dynamo):
    store, stubber = dynamo
    stubber.add_response(
        "transact_write_items",
        {},
        {
            "TransactItems": [
                {"Put": {"TableName": "speeds", "Item": _item("a", "1")}},
                {"Put": {"TableName": "speeds", "Item": _item("b", "2")}},
            ]
        },
    )

    store.pipeline().set("a", "1").set("b", "2").exec()


def test_dynamo_pipeline_rejects_oversized_transaction(dynamo):
    store, _stubber = dynamo
    p = store.pipeline()
    for i in range(kv_store.DYNAMO_TRANSACTION_LIMIT + 1):
        p.set(f"k{i}", "v")
    with pytest.raises(ValueError):
        p.exec()


def test_dynamo_set(dynamo):
    store, stubber = dynamo
    stubber.add_response("put_item", {}, {"TableName": "speeds", "Item": _item("a", "1")})
    store.set("a", "1")


class _NoSuchKey(Exception):
    pass


class _Body:
    def __init__(self, data):
        self.data = data

    def read(self):
        return self.data


class FakeS3:
    class exceptions:
        NoSuchKey = _NoSuchKey

    def __init__(self, objects=None, broken=()):
        self.objects = dict(objects or {})
        self.broken = set(broken)
        self.puts = []

    def get_object(self, Bucket, Key):
        if Key in self.broken:
            raise ConnectionError("read timed out")
        if Key not in self.objects:
            raise _NoSuchKey(Key)
        return {"Body": _Body(self.objects[Key])}

    def put_object(self, **kwargs):
        self.puts.append(kwargs)
        self.objects[kwargs["Key"]] = kwargs["Body"]


def test_s3_get_and_set():
    s3 = FakeS3()
    store = S3KeyValueStore("bucket", prefix="avg24h/", client=s3)

    assert store.get("a") is None
    store.set("a", "12.5")

    assert s3.puts[0]["Bucket"] == "bucket"
    assert s3.puts[0]["Key"] == "avg24h/a"
    assert store.get("a") == "12.5"
    assert not hasattr(store, "pipeline")


def test_s3_get_propagates_other_errors():
    store = S3KeyValueStore("bucket", client=FakeS3(broken={"avg24h/a"}))
    with pytest.raises(ConnectionError):
        store.get("a")


def test_s3_mget_marks_failed_keys():
    s3 = FakeS3(objects={"p/a": b"1", "p/c": b"3"}, broken={"p/b"})
    store = S3KeyValueStore("bucket", prefix="p/", client=s3)

    assert store.mget(["a", "b", "c", "d"]) == ["1", READ_FAILED, "3", None]


def test_s3_mget_reads_keys_concurrently():
    # Both GETs must be in flight together to pass the barrier
    barrier = threading.Barrier(2, timeout=5)

    class WaitingS3(FakeS3):
        def get_object(self, Bucket, Key):
            barrier.wait()
            return super().get_object(Bucket, Key)

    store = S3KeyValueStore("bucket", prefix="", client=WaitingS3(objects={"a": b"1", "b": b"2"}))
    assert store.mget(["a", "b"]) == ["1", "2"]
    assert store.mget([]) == []


def test_get_kv_store_unconfigured():
    assert get_kv_store({}) is None
    assert get_kv_store({"AVG24H_STORE": "  "}) is None


def test_get_kv_store_dynamodb(aws_env):
    store = get_kv_store({"AVG24H_STORE": "DynamoDB", "AVG24H_TABLE_NAME": "speeds"})
    assert isinstance(store, DynamoKeyValueStore)
    assert store.table_name == "speeds"


def test_get_kv_store_s3(aws_env):
    store = get_kv_store({"AVG24H_STORE": "s3", "BUCKET_NAME": "b", "AVG24H_S3_PREFIX": "x/"})
    assert isinstance(store, S3KeyValueStore)
    assert (store.bucket, store.prefix) == ("b", "x/")


@pytest.mark.parametrize(
    "env",
    [
        {"AVG24H_STORE": "redis"},
        {"AVG24H_STORE": "dynamodb"},
        {"AVG24H_STORE": "s3", "BUCKET_NAME": ""},
    ],
)
def test_get_kv_store_misconfigured_fails_fast(env):
    with pytest.raises(ValueError):
        get_kv_store(env)


def test_read_failed_repr():
    assert repr(READ_FAILED) == "READ_FAILED"
