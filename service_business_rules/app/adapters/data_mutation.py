"""
Data-mutation service client.

Both operations are scoped to the tenant of the triggering event through the
URL path.
"""

from typing import Any, Dict
from urllib.parse import quote

from shared.errors import ExternalServiceError
from .http import HttpSinkClient


class DataMutationClient(HttpSinkClient):
    """Updates and creates tenant records."""

    service_name = "data_mutation"

    def _records_url(self, tenant_id: str, table: str) -> str:
        return f"{self.base_url}/tenants/{quote(tenant_id, safe='')}/tables/{quote(table, safe='')}/records"

    async def update(self, tenant_id: str, table: str, record_id: str, fields: Dict[str, Any]) -> int:
        """Apply a field update and return the affected-row count."""
        url = f"{self._records_url(tenant_id, table)}/{quote(str(record_id), safe='')}"
        response = await self.request("PATCH", url, json={"fields": fields})
        body = self.json_body(response)

        affected = body.get("affected", body.get("affected_rows"))
        if affected is None:
            raise ExternalServiceError(
                self.service_name,
                "response did not include an affected-row count",
                details={"table": table, "record_id": record_id}
            )

        self.logger.info("Record updated", tenant_id=tenant_id, table=table, record_id=record_id, affected=affected)
        return int(affected)

    async def create(self, tenant_id: str, table: str, fields: Dict[str, Any]) -> str:
        """Insert a row and return its id."""
        response = await self.request("POST", self._records_url(tenant_id, table), json={"fields": fields})
        body = self.json_body(response)

        new_id = body.get("id")
        if new_id is None:
            raise ExternalServiceError(
                self.service_name,
                "response did not include the new record id",
                details={"table": table}
            )

        self.logger.info("Record created", tenant_id=tenant_id, table=table, record_id=new_id)
        return str(new_id)
