"""
Email queue service client.
"""

from typing import Optional

from shared.errors import ExternalServiceError
from .http import HttpSinkClient


class EmailQueueClient(HttpSinkClient):
    """Queues templated emails; delivery happens in the email service."""

    service_name = "email_queue"

    async def enqueue(self,
                      tenant_id: str,
                      template_id: str,
                      recipient: str,
                      source_table: Optional[str],
                      record_id: Optional[str],
                      rule_id: Optional[str] = None) -> str:
        """Queue one email and return the queue entry id."""
        payload = {
            "school_id": tenant_id,
            "template_id": template_id,
            "recipient_email": recipient,
            "source_table": source_table,
            "record_id": record_id,
            "rule_id": rule_id,
        }
        response = await self.request("POST", f"{self.base_url}/email-queue", json=payload)
        body = self.json_body(response)

        queue_id = body.get("id") or body.get("queue_id")
        if queue_id is None:
            raise ExternalServiceError(
                self.service_name,
                "response did not include a queue id",
                details={"status_code": response.status_code}
            )

        self.logger.info(
            "Email queued",
            tenant_id=tenant_id,
            template_id=template_id,
            queue_id=queue_id
        )
        return str(queue_id)
