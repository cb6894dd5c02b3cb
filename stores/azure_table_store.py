from __future__ import annotations

import os
from datetime import datetime
from typing import Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.data.tables import TableClient, TableServiceClient, UpdateMode
from azure.identity import DefaultAzureCredential

from core.settings import Settings
from stores.interfaces import CredentialStoreError, CredentialValue


_KIND_STRING = "string"
_KIND_DATE = "date"
_KIND_BLOB = "blob"


class AzureTableStore:
    """Credential store backed by one Azure table.

    The namespace is the partition key and each credential key is a row.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.namespace = settings.credential_namespace
        self._table_client: Optional[TableClient] = None

    def _get_table_client(self) -> TableClient:
        if self._table_client:
            return self._table_client

        table_endpoint = os.environ.get("AzureWebJobsStorage__tableServiceUri")
        if not table_endpoint:
            conn_str = os.environ.get("AzureWebJobsStorage")
            if conn_str:
                service = TableServiceClient.from_connection_string(conn_str)
                self._table_client = service.get_table_client(self.settings.table_name)
        else:
            credential = DefaultAzureCredential()
            self._table_client = TableClient(
                endpoint=table_endpoint,
                credential=credential,
                table_name=self.settings.table_name,
            )

        if not self._table_client:
            raise RuntimeError("Table client could not be initialized. Check storage configuration.")

        try:
            self._table_client.create_table()
        except AzureError:
            # Already exists.
            pass

        return self._table_client

    def save(self, key: str, value: CredentialValue) -> None:
        if isinstance(value, str):
            kind = _KIND_STRING
        elif isinstance(value, datetime):
            kind = _KIND_DATE
        elif isinstance(value, bytes):
            kind = _KIND_BLOB
        else:
            raise CredentialStoreError(f"Unsupported credential value type: {type(value).__name__}")

        table_client = self._get_table_client()
        table_client.upsert_entity(
            {
                "PartitionKey": self.namespace,
                "RowKey": key,
                "kind": kind,
                "value": value,
            },
            mode=UpdateMode.REPLACE,
        )

    def read(self, key: str) -> Optional[CredentialValue]:
        table_client = self._get_table_client()
        try:
            entity = table_client.get_entity(partition_key=self.namespace, row_key=key)
        except ResourceNotFoundError:
            return None

        value = entity.get("value")
        kind = entity.get("kind")
        if kind == _KIND_DATE and isinstance(value, datetime):
            return datetime.fromtimestamp(value.timestamp(), tz=value.tzinfo)
        if kind == _KIND_BLOB and isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if kind == _KIND_STRING and isinstance(value, str):
            return value
        return None

    def delete(self, key: str) -> None:
        table_client = self._get_table_client()
        try:
            table_client.delete_entity(partition_key=self.namespace, row_key=key)
        except ResourceNotFoundError:
            pass
