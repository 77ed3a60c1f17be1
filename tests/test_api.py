"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from autoflow.config import get_testing_config
from autoflow.factory import create_app, get_app_state

from helpers import CONTACT_ID, ORG_ID, RecordingChannel


def workflow_payload(workflow_id="wf_api", status="active", nodes=None, edges=None):
    return {
        "workflow": {
            "id": workflow_id,
            "organization_id": ORG_ID,
            "name": "Welcome",
            "status": status,
            "nodes": nodes if nodes is not None else [
                {"id": "trigger", "type": "trigger", "config": {"trigger_type": "contact_replied",
                                                                "keywords": ["hi"]}},
                {"id": "msg", "type": "message", "config": {"text": "Welcome {{first_name}}!"}},
            ],
            "edges": edges if edges is not None else [{"source": "trigger", "target": "msg"}],
        }
    }


def reply_event(content="hi there"):
    return {"type": "contact_replied", "organization_id": ORG_ID, "contact_id": CONTACT_ID,
            "payload": {"content": content, "message_type": "text"}}


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def client(session_factory, channel, seeded_contact):
    app = create_app(get_testing_config(), session_factory=session_factory,
                     channel_factory=lambda credentials: channel)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "running" in response.json()["message"]

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["scheduler_running"] is False


class TestWorkflowEndpoints:
    def test_create_and_get(self, client):
        response = client.post("/api/v1/workflows", json=workflow_payload())

        assert response.status_code == 201
        assert response.json()["workflow_id"] == "wf_api"

        fetched = client.get("/api/v1/workflows/wf_api")
        assert fetched.status_code == 200
        assert fetched.json()["nodes"][1]["config"]["text"] == "Welcome {{first_name}}!"

    def test_invalid_active_workflow(self, client):
        payload = workflow_payload(nodes=[{"id": "msg", "type": "message", "config": {"text": "x"}}], edges=[])

        response = client.post("/api/v1/workflows", json=payload)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "WorkflowValidationError"
        assert "Workflow must have a trigger node" in detail["message"]

    def test_duplicate_workflow(self, client):
        client.post("/api/v1/workflows", json=workflow_payload())

        response = client.post("/api/v1/workflows", json=workflow_payload())

        assert response.status_code == 400

    def test_malformed_request(self, client):
        response = client.post("/api/v1/workflows", json={"workflow": {"name": "no org"}})

        assert response.status_code == 422

    def test_get_missing_workflow(self, client):
        response = client.get("/api/v1/workflows/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "WorkflowNotFound"

    def test_activate_and_deactivate(self, client):
        client.post("/api/v1/workflows", json=workflow_payload(status="draft"))

        activated = client.post("/api/v1/workflows/wf_api/activate")
        deactivated = client.post("/api/v1/workflows/wf_api/deactivate")

        assert activated.status_code == 200
        assert activated.json()["status"] == "active"
        assert deactivated.json()["status"] == "inactive"
        assert client.post("/api/v1/workflows/missing/activate").status_code == 404


class TestEventEndpoints:
    def test_event_starts_execution(self, client, channel):
        client.post("/api/v1/workflows", json=workflow_payload())

        response = client.post("/api/v1/events", json=reply_event())

        assert response.status_code == 200
        body = response.json()
        assert body["results"] == [{"workflow_id": "wf_api", "triggered": True, "reason": None}]
        execution = body["executions"][0]
        assert execution["status"] == "completed"
        assert execution["execution_path"] == ["trigger", "msg"]
        assert "credentials" not in execution
        assert channel.sent[0]["text"] == "Welcome Test!"

        fetched = client.get(f"/api/v1/executions/{execution['execution_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["data"]["msg"]["status"] == "sent"

        logs = client.get(f"/api/v1/executions/{execution['execution_id']}/logs").json()
        assert logs[0]["event_type"] == "workflow_start"
        assert logs[-1]["event_type"] == "workflow_complete"

        summary = client.get(f"/api/v1/executions/{execution['execution_id']}/summary").json()
        assert summary["total_nodes"] == 2
        assert summary["completed_nodes"] == 2
        assert [n["node_id"] for n in summary["nodes"]] == ["trigger", "msg"]

    def test_event_not_matching(self, client, channel):
        client.post("/api/v1/workflows", json=workflow_payload())

        body = client.post("/api/v1/events", json=reply_event("goodbye")).json()

        assert body["results"][0]["triggered"] is False
        assert body["results"][0]["reason"] == "Trigger conditions not met"
        assert body["executions"] == []
        assert channel.sent == []

    def test_missing_execution(self, client):
        assert client.get("/api/v1/executions/exec_missing").status_code == 404
        assert client.get("/api/v1/executions/exec_missing/logs").status_code == 404
        assert client.get("/api/v1/executions/exec_missing/summary").status_code == 404

    def test_resume_due(self, client, channel):
        nodes = [
            {"id": "trigger", "type": "trigger", "config": {"trigger_type": "contact_replied"}},
            {"id": "wait", "type": "delay", "config": {"amount": 0, "unit": "minutes"}},
            {"id": "msg", "type": "message", "config": {"text": "Later"}},
        ]
        edges = [{"source": "trigger", "target": "wait"}, {"source": "wait", "target": "msg"}]
        client.post("/api/v1/workflows", json=workflow_payload(nodes=nodes, edges=edges))

        execution = client.post("/api/v1/events", json=reply_event()).json()["executions"][0]
        assert execution["status"] == "waiting"

        result = client.post("/api/v1/scheduler/resume-due").json()

        assert result["resumed"] == 1
        assert channel.sent[0]["text"] == "Later"
        assert client.get(f"/api/v1/executions/{execution['execution_id']}").json()["status"] == "completed"

    def test_app_state_is_wired(self, client):
        state = get_app_state()

        assert state.dispatcher is not None
        assert state.scheduler.running is False


class TestScheduleEndpoints:
    def test_schedule_runs_workflow(self, client, channel):
        client.post("/api/v1/workflows", json=workflow_payload())

        response = client.post("/api/v1/schedules", json={
            "workflow_id": "wf_api",
            "schedule_type": "once",
            "config": {"scheduled_at": "2020-01-01T09:00:00+02:00"},
        })

        assert response.status_code == 201
        schedule = response.json()
        assert schedule["organization_id"] == ORG_ID
        assert schedule["next_run_at"] == "2020-01-01T07:00:00"

        result = client.post("/api/v1/scheduler/run-schedules").json()

        assert result["schedules_processed"] == 1
        assert result["executions_started"] == 1
        assert channel.sent[0]["text"] == "Welcome Test!"
        fetched = client.get(f"/api/v1/schedules/{schedule['id']}").json()
        assert fetched["is_active"] is False
        assert fetched["execution_count"] == 1

    def test_schedule_for_missing_workflow(self, client):
        response = client.post("/api/v1/schedules", json={"workflow_id": "missing", "schedule_type": "cron",
                                                          "config": {"cron_expression": "0 9 * * *"}})

        assert response.status_code == 404

    def test_invalid_cron_expression(self, client):
        client.post("/api/v1/workflows", json=workflow_payload())

        response = client.post("/api/v1/schedules", json={"workflow_id": "wf_api", "schedule_type": "cron",
                                                          "config": {"cron_expression": "every day"}})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "ConfigurationError"

    def test_deactivate_schedule(self, client):
        client.post("/api/v1/workflows", json=workflow_payload())
        schedule = client.post("/api/v1/schedules", json={"workflow_id": "wf_api", "schedule_type": "recurring",
                                                          "config": {"interval_minutes": 60}}).json()

        response = client.post(f"/api/v1/schedules/{schedule['id']}/deactivate")

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.post("/api/v1/schedules/sched_missing/deactivate").status_code == 404
        assert client.get("/api/v1/schedules/sched_missing").status_code == 404
