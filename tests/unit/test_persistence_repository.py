from datetime import datetime, timedelta, timezone

import pytest

from procflow.definitions import Category, ProcessGraph
from procflow.errors import ConcurrentModification, DuplicateDefinition
from procflow.instances import InstanceStatus, Priority, complete_task, lifecycle
from procflow.persistence import (
    ExpectedState,
    InMemoryProcessRepository,
    InstanceFilter,
    SQLiteProcessRepository,
)

T0 = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryProcessRepository()
    return SQLiteProcessRepository(tmp_path / "procflow.db")


@pytest.mark.asyncio
async def test_definition_crud(repo, invoice_definition, make_definition):
    await repo.save_definition(invoice_definition)
    other = make_definition(name="Leave Request", category="hr", is_active=False)
    await repo.save_definition(other)

    loaded = await repo.load_definition(invoice_definition.id)
    assert loaded == invoice_definition

    assert {d.id for d in await repo.list_definitions()} == {invoice_definition.id, other.id}
    assert [d.id for d in await repo.list_definitions(category=Category.HR)] == [other.id]
    assert [d.id for d in await repo.list_definitions(active=True)] == [invoice_definition.id]
    assert [d.id for d in await repo.list_definitions(search="INVOICE")] == [
        invoice_definition.id
    ]

    # saving again under the same id replaces the document
    renamed = invoice_definition.model_copy(update={"description": "Supplier invoices"})
    await repo.save_definition(renamed)
    assert (await repo.load_definition(renamed.id)).description == "Supplier invoices"

    assert await repo.delete_definition(other.id) is True
    assert await repo.delete_definition(other.id) is False
    assert await repo.load_definition(other.id) is None


@pytest.mark.asyncio
async def test_definition_name_and_version_are_unique(repo, make_definition):
    await repo.save_definition(make_definition(name="Purchase Order", version="2.0"))
    with pytest.raises(DuplicateDefinition):
        await repo.save_definition(make_definition(name="Purchase Order", version="2.0"))
    await repo.save_definition(make_definition(name="Purchase Order", version="2.1"))


@pytest.mark.asyncio
async def test_instance_round_trip_with_history(repo, invoice_definition):
    instance = lifecycle.start_instance(
        invoice_definition,
        "alice",
        T0,
        variables={"amount": 1200, "lines": [{"sku": "A", "qty": 2}]},
        assigned_to=["bob"],
        tenant_id="acme",
    )
    await repo.persist_instance(instance)

    advanced = complete_task(
        instance, ProcessGraph(invoice_definition), {"ok": True}, "alice", T0 + timedelta(seconds=1)
    )
    await repo.persist_instance(advanced, ExpectedState.of(instance))

    loaded = await repo.load_instance(instance.id)
    assert loaded is not None
    assert loaded.current_step == "finance_review"
    assert loaded.variables == advanced.variables
    assert loaded.assigned_to == ["bob"]
    assert loaded.tenant_id == "acme"
    assert loaded.version == 2
    assert [e.sequence for e in loaded.audit_log] == [1, 2]
    assert loaded.audit_log == advanced.audit_log

    history = await repo.load_history(instance.id)
    assert [e.action.value for e in history] == ["process_started", "task_completed"]
    assert await repo.load_instance("missing") is None


@pytest.mark.asyncio
async def test_stale_write_is_rejected(repo, invoice_definition):
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)
    await repo.persist_instance(instance)
    graph = ProcessGraph(invoice_definition)
    later = T0 + timedelta(seconds=1)

    first = complete_task(instance, graph, {"by": "alice"}, "alice", later)
    second = complete_task(instance, graph, {"by": "bob"}, "bob", later)

    await repo.persist_instance(first, ExpectedState.of(instance))
    with pytest.raises(ConcurrentModification) as exc:
        await repo.persist_instance(second, ExpectedState.of(instance))
    assert exc.value.retryable

    loaded = await repo.load_instance(instance.id)
    assert loaded.variables["by"] == "alice"
    assert len(loaded.audit_log) == 2


@pytest.mark.asyncio
async def test_duplicate_insert_is_rejected(repo, invoice_definition):
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)
    await repo.persist_instance(instance)
    with pytest.raises(ConcurrentModification):
        await repo.persist_instance(instance)


@pytest.mark.asyncio
async def test_list_and_count_instances(repo, invoice_definition):
    started = []
    for index in range(5):
        instance = lifecycle.start_instance(
            invoice_definition,
            "alice",
            T0 + timedelta(minutes=index),
            business_key=f"INV-{index}",
            priority=Priority.HIGH if index % 2 else Priority.LOW,
            tenant_id="acme" if index < 4 else "globex",
        )
        await repo.persist_instance(instance)
        started.append(instance)

    suspended = lifecycle.suspend(started[0], "bob", T0 + timedelta(hours=1))
    await repo.persist_instance(suspended, ExpectedState.of(started[0]))

    everything = await repo.list_instances(InstanceFilter())
    assert [i.business_key for i in everything] == ["INV-4", "INV-3", "INV-2", "INV-1", "INV-0"]

    page = await repo.list_instances(criteria=InstanceFilter(page=2, limit=2))
    assert [i.business_key for i in page] == ["INV-2", "INV-1"]

    only_suspended = await repo.list_instances(
        InstanceFilter(statuses=[InstanceStatus.SUSPENDED])
    )
    assert [i.id for i in only_suspended] == [started[0].id]

    high = await repo.list_instances(InstanceFilter(priority=Priority.HIGH))
    assert {i.business_key for i in high} == {"INV-1", "INV-3"}

    assert [i.business_key for i in await repo.list_instances(InstanceFilter(business_key="inv-4"))] == [
        "INV-4"
    ]
    assert len(await repo.list_instances(InstanceFilter(tenant_id="acme"))) == 4

    assert await repo.count_instances(invoice_definition.id) == 5
    assert (
        await repo.count_instances(invoice_definition.id, [InstanceStatus.SUSPENDED]) == 1
    )
    assert await repo.count_instances("other") == 0


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path, invoice_definition):
    db_path = tmp_path / "procflow.db"
    repo = SQLiteProcessRepository(db_path)
    await repo.save_definition(invoice_definition)
    instance = lifecycle.start_instance(invoice_definition, "alice", T0)
    await repo.persist_instance(instance)

    reopened = SQLiteProcessRepository(db_path)
    assert (await reopened.load_definition(invoice_definition.id)).name == invoice_definition.name
    loaded = await reopened.load_instance(instance.id)
    assert loaded.business_key == instance.business_key
    assert loaded.start_time == T0
