from datetime import datetime, timedelta, timezone

import pytest

from procflow.definitions import ProcessDefinition, ProcessGraph
from procflow.errors import (
    CurrentStepNotFound,
    InvalidStateTransition,
    InvalidVariables,
    NodeNotFound,
)
from procflow.instances import (
    AuditAction,
    InstanceStatus,
    complete_task,
    lifecycle,
    next_step,
)

T0 = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)


def _at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


def test_next_step_takes_first_connection(invoice_definition):
    graph = ProcessGraph(invoice_definition)
    assert next_step(graph.find_node("start_1")) == "finance_review"
    assert next_step(graph.find_node("end_1")) is None


def test_complete_task_advances_and_records(invoice_definition):
    graph = ProcessGraph(invoice_definition)
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)

    advanced = complete_task(instance, graph, {"invoice_no": "A-1"}, "alice", _at(1))

    assert advanced.status is InstanceStatus.RUNNING
    assert advanced.current_step == "finance_review"
    assert advanced.variables["invoice_no"] == "A-1"
    assert advanced.variables["start_1_completed"] is True
    assert advanced.variables["start_1_completedAt"] == _at(1).isoformat()
    assert advanced.variables["start_1_completedBy"] == "alice"

    entry = advanced.audit_log[-1]
    assert entry.sequence == 2
    assert entry.action is AuditAction.TASK_COMPLETED
    assert entry.details == {
        "completed_step": "start_1",
        "next_step": "finance_review",
        "variables": {"invoice_no": "A-1"},
    }
    assert entry.previous_state == {"status": "running", "current_step": "start_1"}
    assert entry.new_state == {"status": "running", "current_step": "finance_review"}


def test_reaching_end_node_completes_instance(invoice_definition):
    graph = ProcessGraph(invoice_definition)
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)
    for second in range(1, 5):
        instance = complete_task(instance, graph, None, "alice", _at(second))

    assert instance.status is InstanceStatus.COMPLETED
    assert instance.current_step == "end_1"
    assert instance.end_time == _at(4)
    assert instance.audit_log[-1].new_state == {
        "status": "completed",
        "current_step": "end_1",
    }
    with pytest.raises(InvalidStateTransition):
        complete_task(instance, graph, None, "alice", _at(5))


def test_step_without_connections_completes_in_place():
    definition = ProcessDefinition.model_validate(
        {
            "name": "Dead end",
            "nodes": [
                {"id": "start_1", "type": "start", "name": "Start", "connections": ["t"]},
                {"id": "t", "type": "task", "name": "Terminal task"},
            ],
        }
    )
    graph = ProcessGraph(definition)
    instance = lifecycle.start_instance(definition, "alice", T0)
    instance = complete_task(instance, graph, None, "alice", _at(1))
    instance = complete_task(instance, graph, None, "alice", _at(2))

    assert instance.status is InstanceStatus.COMPLETED
    assert instance.current_step == "t"
    assert instance.audit_log[-1].details["next_step"] is None
    # the audit trail agrees with the stored position
    assert instance.audit_log[-1].new_state == {"status": "completed", "current_step": "t"}
    assert instance.audit_log[-1].new_state["current_step"] == instance.current_step


def test_gateway_follows_first_connection():
    definition = ProcessDefinition.model_validate(
        {
            "name": "Gateway",
            "nodes": [
                {"id": "start_1", "type": "start", "name": "Start", "connections": ["gw"]},
                {
                    "id": "gw",
                    "type": "gateway",
                    "name": "Amount check",
                    "config": {"conditions": {"high": "amount > 1000"}},
                    "connections": ["high", "low"],
                },
                {"id": "high", "type": "task", "name": "High", "connections": ["end_1"]},
                {"id": "low", "type": "task", "name": "Low", "connections": ["end_1"]},
                {"id": "end_1", "type": "end", "name": "End"},
            ],
        }
    )
    graph = ProcessGraph(definition)
    instance = lifecycle.start_instance(definition, "alice", T0, variables={"amount": 5})
    instance = complete_task(instance, graph, None, "alice", _at(1))
    instance = complete_task(instance, graph, None, "alice", _at(2))

    assert instance.current_step == "high"


def test_suspended_instance_cannot_complete(invoice_definition):
    graph = ProcessGraph(invoice_definition)
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)
    suspended = lifecycle.suspend(instance, "bob", _at(1))

    with pytest.raises(InvalidStateTransition):
        complete_task(suspended, graph, {"x": 1}, "alice", _at(2))


def test_missing_current_step(invoice_definition):
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)
    instance = complete_task(instance, ProcessGraph(invoice_definition), None, "a", _at(1))

    edited = invoice_definition.model_copy(
        update={"nodes": [n for n in invoice_definition.nodes if n.id != "finance_review"]}
    )
    with pytest.raises(CurrentStepNotFound) as exc:
        complete_task(instance, ProcessGraph(edited), None, "alice", _at(2))
    assert exc.value.node_id == "finance_review"
    assert exc.value.instance_id == instance.id


def test_missing_next_node_aborts_without_mutation():
    definition = ProcessDefinition.model_validate(
        {
            "name": "Broken",
            "nodes": [
                {"id": "start_1", "type": "start", "name": "Start", "connections": ["gone"]},
            ],
        }
    )
    instance = lifecycle.start_instance(definition, "alice", T0)
    with pytest.raises(NodeNotFound) as exc:
        complete_task(instance, ProcessGraph(definition), {"x": 1}, "alice", _at(1))

    assert not isinstance(exc.value, CurrentStepNotFound)
    assert instance.version == 1
    assert "x" not in instance.variables


def test_complete_task_rejects_non_json_variables(invoice_definition):
    graph = ProcessGraph(invoice_definition)
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)

    with pytest.raises(InvalidVariables) as exc:
        complete_task(instance, graph, {"received": datetime(2024, 6, 1)}, "alice", _at(1))

    assert exc.value.keys == ["received"]
    assert instance.current_step == "start_1"
    assert instance.version == 1
