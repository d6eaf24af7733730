from datetime import datetime, timedelta, timezone

import pytest

from procflow.definitions import ProcessDefinition


def _linear_nodes(*steps):
    """Nodes wired in a straight line: start, the given steps, end."""
    ids = ["start_1", *[s[0] for s in steps], "end_1"]
    types = ["start", *[s[1] for s in steps], "end"]
    nodes = []
    for index, (node_id, node_type) in enumerate(zip(ids, types)):
        nodes.append(
            {
                "id": node_id,
                "type": node_type,
                "name": node_id.replace("_", " ").title(),
                "connections": [ids[index + 1]] if index + 1 < len(ids) else [],
            }
        )
    return nodes


@pytest.fixture
def make_definition():
    def _make(*steps, **fields) -> ProcessDefinition:
        data = {"name": "Test Process", "nodes": _linear_nodes(*steps)}
        data.update(fields)
        return ProcessDefinition.model_validate(data)

    return _make


@pytest.fixture
def invoice_definition(make_definition) -> ProcessDefinition:
    return make_definition(
        ("finance_review", "task"),
        ("manager_approval", "approval"),
        ("payment_processing", "service"),
        name="Invoice Approval Process",
        version="1.2",
        category="Finance",
        variables={"currency": "EUR"},
    )


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


@pytest.fixture
def clock() -> StepClock:
    return StepClock()
