"""Tests for API error response formats."""

from typing import Any

from fastapi.testclient import TestClient

import escalator.api.app as app_module
from escalator.api.app import create_app
from escalator.api.deps import get_engine, get_rule_store
from escalator.models.rule import Rule


class FakeRuleStore:
    """Minimal rule store for error response tests."""

    def __init__(self, rules: list[Rule] | None = None):
        self._rules = {rule.rule_id: rule for rule in rules or []}

    async def get(self, rule_id: str) -> Any | None:
        return self._rules.get(rule_id)

    async def update(self, rule_id: str, rule: Rule) -> Rule | None:
        self._rules[rule_id] = rule
        return rule


class FakeEngine:
    """Engine that records events instead of running rules."""

    def __init__(self):
        self.events = []

    async def on_event(self, event) -> list:
        self.events.append(event)
        return []


def _make_client(
    monkeypatch,
    rules: list[Rule] | None = None,
    engine: FakeEngine | None = None,
) -> TestClient:
    async def _noop() -> None:
        return None

    monkeypatch.setattr(app_module, "init_redis_pool", _noop)
    monkeypatch.setattr(app_module, "close_redis_pool", _noop)

    app = create_app()
    app.dependency_overrides[get_rule_store] = lambda: FakeRuleStore(rules)
    app.dependency_overrides[get_engine] = lambda: engine or FakeEngine()
    return TestClient(app)


def test_http_exception_response_format(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.get("/api/v1/rules/missing-rule")

    assert response.status_code == 404
    payload = response.json()
    assert payload["code"] == 404
    assert payload["message"] == "Rule missing-rule not found"
    assert "data" in payload


def test_validation_error_response_format(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.post("/api/v1/rules", json={"name": ""})

    assert response.status_code == 422
    payload = response.json()
    assert payload["code"] == 422
    assert payload["message"] == "Validation error"
    assert isinstance(payload["data"], list)
    assert payload["data"]


def test_rule_invalid_for_item_type_is_rejected(monkeypatch) -> None:
    existing = Rule.model_validate({
        "rule_id": "rule_1",
        "workspace_id": "ws_team",
        "item_type": "TASK",
        "name": "Blocked",
        "trigger": {"type": "STATUS_CHANGED", "to_status": "BLOCKED"},
        "action": {"type": "ADD_TAG", "tag": "blocked"},
    })
    client = _make_client(monkeypatch, rules=[existing])

    response = client.put("/api/v1/rules/rule_1", json={
        "workspace_id": "ws_team",
        "item_type": "BUDGET_REQUEST",
        "name": "Blocked budget",
        "trigger": {"type": "STATUS_CHANGED", "to_status": "BLOCKED"},
        "action": {"type": "ADD_TAG", "tag": "blocked"},
    })

    assert response.status_code == 422
    payload = response.json()
    assert payload["message"] == "Validation error"
    assert payload["data"]


def test_unrecognized_event_is_rejected(monkeypatch) -> None:
    engine = FakeEngine()
    client = _make_client(monkeypatch, engine=engine)

    response = client.post("/api/v1/events", json={"hello": "world"})

    assert response.status_code == 422
    assert response.json()["message"] == "Unrecognized event payload"
    assert engine.events == []


def test_change_notification_is_accepted(monkeypatch) -> None:
    engine = FakeEngine()
    client = _make_client(monkeypatch, engine=engine)

    response = client.post("/api/v1/events", json={
        "type": "UPDATE",
        "table": "workspace_tasks",
        "record": {"id": "task_1", "workspace_id": "ws_team", "status": "blocked"},
        "old_record": {"id": "task_1", "workspace_id": "ws_team", "status": "in_progress"},
    })

    assert response.status_code == 200
    payload = response.json()
    assert payload["data"]["event_kind"] == "STATUS_CHANGED"
    assert payload["data"]["entries"] == []
    assert engine.events[0].to_status == "BLOCKED"


def test_health_check(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
