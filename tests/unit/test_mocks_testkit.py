from __future__ import annotations

import pytest

from tabledict_py.mocks import ANY, FakeDynamoDBClient, FakeTableClient, FakeTableEntity


def test_fake_dynamodb_client_records_and_matches_calls() -> None:
    client = FakeDynamoDBClient()
    client.expect("put_item", {"TableName": "notes", "Item": ANY})

    assert client.put_item(TableName="notes", Item={"PartitionKey": {"S": "p"}}) == {}

    client.assert_no_pending()
    assert client.calls == [("put_item", {"TableName": "notes", "Item": {"PartitionKey": {"S": "p"}}})]


def test_fake_dynamodb_client_asserts_pending_calls() -> None:
    client = FakeDynamoDBClient()
    client.expect("query")
    with pytest.raises(AssertionError, match="pending"):
        client.assert_no_pending()


def test_fake_dynamodb_client_rejects_unexpected_calls() -> None:
    client = FakeDynamoDBClient()
    with pytest.raises(AssertionError, match="unexpected call: scan"):
        client.scan(TableName="t")

    client.expect("get_item")
    with pytest.raises(AssertionError, match="expected get_item, got scan"):
        client.scan(TableName="t")


def test_fake_client_reports_mismatched_requests() -> None:
    client = FakeDynamoDBClient()
    client.expect("get_item", {"Key": {"RowKey": {"S": "a"}}, "Names": ["x"]})
    with pytest.raises(AssertionError, match=r"get_item\.Key\.RowKey\.S"):
        client.get_item(Key={"RowKey": {"S": "b"}}, Names=["x"])

    client.expect("get_item", {"Names": ["x", "y"]})
    with pytest.raises(AssertionError, match="expected 2 items"):
        client.get_item(Names=["x"])

    client.expect("get_item", {"Key": {"RowKey": "a"}})
    with pytest.raises(AssertionError, match="missing key"):
        client.get_item(Key={})


def test_fake_table_client_reports_status_through_hook() -> None:
    client = FakeTableClient("Settings", account="acct")
    client.expect("delete_entity", {"partition_key": "p"}, status=404)

    statuses: list[int] = []
    client.delete_entity("p", "r", raw_response_hook=lambda r: statuses.append(r.http_response.status_code))

    assert statuses == [404]
    assert client.url == "https://acct.table.core.windows.net/Settings"


def test_fake_table_client_iterates_query_responses() -> None:
    client = FakeTableClient()
    client.expect("query_entities", response=[FakeTableEntity({"RowKey": "a"}, metadata={"etag": "1"})])
    client.expect("list_entities")

    rows = list(client.query_entities("PartitionKey eq @pk", parameters={"pk": "p"}))
    assert rows == [{"RowKey": "a"}]
    assert rows[0].metadata == {"etag": "1"}
    assert list(client.list_entities()) == []
