"""Integration tests for the HTTP and WebSocket API."""

from __future__ import annotations

import time


def _wait_for_status(client, execution_id, wanted=("completed", "failed", "cancelled"), attempts=250):
    for _ in range(attempts):
        r = client.get(f"/api/executions/{execution_id}")
        if r.status_code == 200 and r.json()["status"] in wanted:
            return r.json()
        time.sleep(0.02)
    raise AssertionError(f"Execution {execution_id} never reached {wanted}")


def _create_message(client, subject="Submission - Apex Manufacturing"):
    r = client.post("/api/messages", json={
        "subject": subject,
        "sender": "broker@example.com",
        "body": "Please quote.",
        "persona": "rachel",
    })
    assert r.status_code == 201
    return r.json()["id"]


class TestHealthAndSettings:
    """Sanity checks for basic endpoints."""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["active_executions"] == 0

    def test_settings(self, client):
        r = client.get("/api/settings")
        assert r.status_code == 200
        data = r.json()
        assert data["mode"] == "demo"
        assert "requires_referral" in data["stop_actions"]


class TestConfigAPI:

    def test_put_get_and_list(self, client):
        r = client.put("/api/config/demo.scenarios.test", json={"value": {"tiv": 5}, "updated_by": "admin"})
        assert r.status_code == 200
        assert r.json()["version"] == 1

        r = client.put("/api/config/demo.scenarios.test", json={"value": {"tiv": 6}})
        assert r.json()["version"] == 2

        r = client.get("/api/config/demo.scenarios.test")
        assert r.status_code == 200
        assert r.json()["value"] == {"tiv": 6}

        r = client.get("/api/config", params={"prefix": "demo.scenarios."})
        assert r.json() == {"demo.scenarios.test": {"tiv": 6}}

    def test_persona_scoped_value(self, client):
        client.put("/api/config/demo.greeting", json={"value": "hello"})
        client.put("/api/config/demo.greeting", json={"value": "hi rachel", "persona": "rachel"})

        r = client.get("/api/config/demo.greeting", params={"persona": "rachel"})
        assert r.json()["value"] == "hi rachel"
        assert r.json()["persona"] == "rachel"

    def test_missing_key(self, client):
        assert client.get("/api/config/demo.nothing").status_code == 404

    def test_invalid_key(self, client):
        r = client.put("/api/config/demo.bad key", json={"value": 1})
        assert r.status_code == 400
        assert "whitespace" in r.json()["detail"]


class TestMessagesAPI:

    def test_create_list_get(self, client):
        message_id = _create_message(client)

        r = client.get(f"/api/messages/{message_id}")
        assert r.status_code == 200
        assert r.json()["subject"] == "Submission - Apex Manufacturing"

        r = client.get("/api/messages")
        assert [m["id"] for m in r.json()] == [message_id]

    def test_missing_message(self, client):
        assert client.get("/api/messages/9999").status_code == 404

    def test_validation(self, client):
        r = client.post("/api/messages", json={"subject": "", "sender": "x"})
        assert r.status_code == 422


class TestWorkflowAPI:

    def test_start_and_complete(self, client, three_step_config):
        message_id = _create_message(client)
        r = client.post("/api/workflows/start", json={
            "trigger_id": message_id,
            "user_id": "user-1",
            "scenario_key": "demo-scenario",
        })
        assert r.status_code == 202
        execution_id = r.json()["execution_id"]
        assert execution_id.startswith("demo-")

        record = _wait_for_status(client, execution_id)
        assert record["status"] == "completed"
        assert record["step_count"] == 3
        assert [s["status"] for s in record["steps"]] == ["completed"] * 3
        assert [s["step_order"] for s in record["steps"]] == [1, 2, 3]
        assert record["result_summary"]["steps_completed"] == 3

        r = client.get("/api/executions")
        assert [e["execution_id"] for e in r.json()] == [execution_id]

        r = client.get("/api/activities")
        assert {a["status"] for a in r.json()} == {"running", "completed"}

        assert client.get(f"/api/workflows/{execution_id}/status").status_code == 404

    def test_missing_configuration(self, client, three_step_config):
        three_step_config.delete_setting("demo.workflow.output-templates.assess")
        message_id = _create_message(client)

        r = client.post("/api/workflows/start", json={
            "trigger_id": message_id,
            "user_id": "user-1",
            "scenario_key": "demo-scenario",
        })
        assert r.status_code == 422
        data = r.json()
        assert data["missing_keys"] == ["demo.workflow.output-templates.assess"]
        assert "demo.workflow.output-templates.assess" in data["detail"]
        assert client.get("/api/executions").json() == []

    def test_unknown_scenario(self, client, three_step_config):
        message_id = _create_message(client)
        r = client.post("/api/workflows/start", json={
            "trigger_id": message_id,
            "user_id": "user-1",
            "scenario_key": "no-such-scenario",
        })
        assert r.status_code == 404
        assert "no-such-scenario" in r.json()["detail"]

    def test_unknown_trigger(self, client, three_step_config):
        r = client.post("/api/workflows/start", json={
            "trigger_id": 9999,
            "user_id": "user-1",
            "scenario_key": "demo-scenario",
        })
        assert r.status_code == 404

    def test_invalid_request(self, client):
        r = client.post("/api/workflows/start", json={"trigger_id": 0, "user_id": "", "scenario_key": "x"})
        assert r.status_code == 422

    def test_status_and_cancel_of_pending_run(self, client, three_step_config):
        message_id = _create_message(client)
        r = client.post("/api/workflows/start", json={
            "trigger_id": message_id,
            "user_id": "user-1",
            "scenario_key": "demo-scenario",
            "wait_for_subscriber": True,
        })
        execution_id = r.json()["execution_id"]

        r = client.get(f"/api/workflows/{execution_id}/status")
        assert r.status_code == 200
        assert r.json()["current_step_index"] == 0
        assert r.json()["total_steps"] == 3

        r = client.get("/api/workflows/active")
        assert [w["execution_id"] for w in r.json()] == [execution_id]

        r = client.post(f"/api/workflows/{execution_id}/cancel")
        assert r.status_code == 200
        assert r.json()["cancel_requested"] is True

        record = _wait_for_status(client, execution_id)
        assert record["status"] == "cancelled"
        assert client.post(f"/api/workflows/{execution_id}/cancel").status_code == 404

    def test_unknown_execution(self, client):
        assert client.get("/api/executions/demo-missing").status_code == 404
        assert client.get("/api/workflows/demo-missing/status").status_code == 404
        assert client.post("/api/workflows/demo-missing/cancel").status_code == 404


class TestDemoSeed:

    def test_seed_is_idempotent(self, client, config_service):
        r = client.post("/api/demo/seed")
        assert r.status_code == 200
        first = r.json()
        assert first["config_keys_written"] == first["config_keys_total"]
        assert set(first["messages"]) == {"willis_apex_manufacturing", "marsh_retail_complex"}
        assert len(config_service.list_settings("demo.workflow.steps.")) == 8

        r = client.post("/api/demo/seed")
        second = r.json()
        assert second["config_keys_written"] == 0
        assert second["messages"] == {}
        assert len(client.get("/api/messages").json()) == 2

    def test_seed_overwrite(self, client, config_service):
        client.post("/api/demo/seed")
        config_service.set_setting("demo.workflow.default_persona", "john")

        r = client.post("/api/demo/seed", params={"overwrite": True})
        assert r.json()["config_keys_written"] == r.json()["config_keys_total"]
        assert config_service.get_setting("demo.workflow.default_persona") == "rachel"


class TestExecutionStream:

    def test_subscribe_and_receive_events(self, client, three_step_config):
        message_id = _create_message(client)
        r = client.post("/api/workflows/start", json={
            "trigger_id": message_id,
            "user_id": "user-1",
            "scenario_key": "demo-scenario",
            "wait_for_subscriber": True,
        })
        execution_id = r.json()["execution_id"]

        with client.websocket_connect("/api/agent-executions/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection-established"
            assert hello["clientId"].startswith("client-")

            ws.send_json({"type": "subscribe-execution", "executionId": execution_id})
            confirmed = ws.receive_json()
            assert confirmed == {
                "type": "subscription-confirmed",
                "executionId": execution_id,
                "live": True,
                "timestamp": confirmed["timestamp"],
            }

            events = []
            while not events or events[-1]["type"] != "execution_completed":
                events.append(ws.receive_json())

        assert [e["type"] for e in events] == [
            "execution_started",
            "step_started", "step_completed",
            "step_started", "step_completed",
            "step_started", "step_completed",
            "execution_completed",
        ]
        assert all(e["executionId"] == execution_id for e in events)
        assert events[0]["totalSteps"] == 3
        assert events[-1]["completedSteps"] == 3

    def test_protocol_errors(self, client):
        with client.websocket_connect("/api/agent-executions/ws") as ws:
            ws.receive_json()

            ws.send_text("{not json")
            assert ws.receive_json()["message"] == "Invalid JSON"

            ws.send_json({"type": "ping"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "ping" in error["message"]

            ws.send_json({"type": "subscribe-execution", "executionId": "demo-missing"})
            assert ws.receive_json()["live"] is False
