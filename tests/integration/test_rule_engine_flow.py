"""
Integration tests for the complete rule engine flow.

A change event travels from a Kafka message through matching and action
dispatch to the email queue and data-mutation services (served by a patched
httpx client) and ends up as an execution log visible through the API.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from service_business_rules.app.ingest.consumer import ChangeEventConsumer
from service_business_rules.app.main import BusinessRulesService
from shared.test_helpers import create_change_event_payload, encode_change_event


class FakeSinks:
    """Routes outbound sink requests by URL and remembers them."""

    def __init__(self, data_status=200):
        self.calls = []
        self.data_status = data_status

    async def request(self, method, url, json=None, headers=None):
        self.calls.append((method, url, json))
        if url.endswith("/email-queue"):
            return httpx.Response(201, json={"id": f"q-{len(self.calls)}"})
        if method == "PATCH":
            return httpx.Response(self.data_status, json={"affected": 1})
        if method == "POST":
            return httpx.Response(201, json={"id": "note-1"})
        return httpx.Response(404)


class TestRuleEngineFlow:
    """End-to-end tests running the service in-process."""

    @pytest.fixture
    def service(self):
        return BusinessRulesService(
            storage_backend="memory",
            email_queue_url="http://email-service",
            data_service_url="http://data-service"
        )

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as test_client:
            yield test_client

    @pytest.fixture
    def consumer(self, service):
        return ChangeEventConsumer(
            bootstrap_servers="localhost:9092",
            group_id="business-rules-test",
            topic="school.record_changes",
            orchestrator=service.orchestrator,
            consumer=MagicMock()
        )

    def create_rule(self, client, tenant_id, actions, **overrides):
        payload = {
            "name": "Notify on completion",
            "trigger_type": "record_updated",
            "trigger_table": "tasks",
            "trigger_conditions": [
                {"conditions": [{"field": "status", "operator": "equals", "value": "completed"}]},
                {"conditions": [{"field": "priority", "operator": "greater_than", "value": "8"}]},
            ],
            "actions": actions,
        }
        payload.update(overrides)
        response = client.post(f"/tenants/{tenant_id}/rules", json=payload)
        assert response.status_code == 201
        return response.json()

    def task_message(self, tenant_id="school-1", status="completed", priority=1, offset=0):
        payload = create_change_event_payload(
            tenant_id=tenant_id,
            old_row={"id": "task-7", "status": "pending", "priority": priority},
            new_row={
                "id": "task-7",
                "status": status,
                "priority": priority,
                "title": "Polish boots",
                "assignee_email": "cadet@school.org",
            },
        )
        return SimpleNamespace(
            topic="school.record_changes", partition=0, offset=offset, value=encode_change_event(payload)
        )

    @pytest.mark.asyncio
    async def test_completed_task_sends_email_and_updates_record(self, client, consumer):
        rule = self.create_rule(client, "school-1", [
            {"type": "send_email", "parameters": {"template_id": "tmpl-done", "send_to_field": "assignee_email"}},
            {"type": "update_record", "parameters": {"set_field": "notified", "value": True}},
        ])
        sinks = FakeSinks()

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(side_effect=sinks.request)
            assert await consumer.process_batch({"tp": [self.task_message()]}) is True

        assert [(method, url) for method, url, _ in sinks.calls] == [
            ("POST", "http://email-service/email-queue"),
            ("PATCH", "http://data-service/tenants/school-1/tables/tasks/records/task-7"),
        ]
        assert sinks.calls[0][2]["recipient_email"] == "cadet@school.org"
        assert sinks.calls[1][2] == {"fields": {"notified": True}}

        logs = client.get("/tenants/school-1/logs").json()["logs"]
        assert len(logs) == 1
        assert logs[0]["business_rule_id"] == rule["id"]
        assert logs[0]["success"] is True
        assert [a["type"] for a in logs[0]["action_details"]["actions"]] == ["send_email", "update_record"]
        consumer.consumer.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_second_condition_group_also_fires(self, client, consumer):
        self.create_rule(client, "school-1", [{"type": "log_event", "parameters": {"msg": "urgent"}}])

        await consumer.handle_message(self.task_message(status="in_progress", priority=9))
        await consumer.handle_message(self.task_message(status="in_progress", priority=2))

        stats = client.get("/tenants/school-1/logs/stats").json()
        assert stats["total_executions"] == 1

    @pytest.mark.asyncio
    async def test_failed_action_is_logged_and_stops_the_rule(self, client, consumer):
        self.create_rule(client, "school-1", [
            {"type": "update_record", "parameters": {"set_field": "notified", "value": True}},
            {"type": "send_email", "parameters": {"template_id": "tmpl-done", "recipient": "ops@school.org"}},
        ])
        sinks = FakeSinks(data_status=404)

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(side_effect=sinks.request)
            await consumer.handle_message(self.task_message())

        assert len(sinks.calls) == 1

        failed = client.get("/tenants/school-1/logs?status=failed").json()
        assert failed["count"] == 1
        log = failed["logs"][0]
        assert log["action_details"]["failed_action_index"] == 0
        assert log["error_message"].startswith("action[0] update_record:")

        stats = client.get("/tenants/school-1/logs/stats").json()
        assert stats["failed_executions"] == 1
        assert stats["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, client, consumer):
        self.create_rule(client, "school-2", [{"type": "log_event", "parameters": {}}])

        report = await consumer.handle_message(self.task_message(tenant_id="school-1"))

        assert report.firings == []
        assert client.get("/tenants/school-2/logs").json()["count"] == 0

    def test_event_endpoint_accepts_wire_format(self, client):
        self.create_rule(client, "school-1", [{"type": "log_event", "parameters": {"msg": "done"}}])
        payload = json.loads(self.task_message().value)

        response = client.post("/events", json=payload)

        assert response.status_code == 200
        assert response.json()["firings"][0]["state"] == "COMPLETED"
