from __future__ import annotations

import os
import uuid
from dataclasses import dataclass

import boto3

from tabledict_py import DynamoRowStore, EntityTable, TableDictionary, entity_field


@dataclass(frozen=True)
class Note:
    owner: str = entity_field(roles=["partition_key"])
    note_id: str = entity_field(roles=["row_key"])
    text: str = ""
    etag: str | None = entity_field(roles=["etag"], default=None)


def _client():
    return boto3.client(
        "dynamodb",
        endpoint_url=os.environ.get("DYNAMODB_ENDPOINT", "http://localhost:8000"),
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "dummy"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "dummy"),
    )


def main() -> None:
    client = _client()
    table_name = f"tabledict_example_{uuid.uuid4().hex[:12]}"
    store = DynamoRowStore(table_name, client=client)
    store.create_if_not_exists()

    try:
        settings = TableDictionary(store, "settings", ignore_case=True)
        settings["Theme"] = "dark"
        settings.add_or_update("session", {"user": "ada", "roles": ["admin"]}, ttl=60)

        print("theme:", settings["theme"])
        print("keys:", list(settings.keys()))
        print("count:", len(settings))

        notes = EntityTable(Note, store)
        saved = notes.insert(Note(owner="ada", note_id="001", text="first"))
        notes.replace(Note(owner="ada", note_id="001", text="edited", etag=saved.etag))
        print("notes:", list(notes.query("ada")))
    finally:
        client.delete_table(TableName=table_name)


if __name__ == "__main__":
    main()
