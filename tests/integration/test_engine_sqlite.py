import asyncio
from datetime import datetime, timezone

import pytest

from procflow import DefinitionCatalog, ProcessEngine
from procflow.errors import ConcurrentModification, InvalidVariables
from procflow.instances import InstanceStatus
from procflow.persistence import SQLiteProcessRepository
from procflow.security import Actor

ALICE = Actor(id="alice")


@pytest.mark.asyncio
async def test_engine_survives_restart(tmp_path, invoice_definition):
    db_path = tmp_path / "procflow.db"
    repo = SQLiteProcessRepository(db_path)
    definition = await DefinitionCatalog(repo).create(invoice_definition, ALICE)

    engine = ProcessEngine(repo)
    instance = await engine.start(definition.id, ALICE, business_key="INV-42")
    await engine.complete_task(instance.id, ALICE, {"reviewed": True})
    await engine.suspend(instance.id, ALICE)

    # a fresh process sees the same state and history
    engine = ProcessEngine(SQLiteProcessRepository(db_path))
    await engine.resume(instance.id, ALICE)
    for _ in range(3):
        instance = await engine.complete_task(instance.id, ALICE)

    assert instance.status is InstanceStatus.COMPLETED
    history = await engine.get_history(instance.id, ALICE)
    assert [e.action.value for e in history] == [
        "process_started",
        "task_completed",
        "suspend",
        "resume",
        "task_completed",
        "task_completed",
        "task_completed",
    ]
    assert [e.sequence for e in history] == list(range(1, 8))

    stored = await engine.get_instance(instance.id, ALICE)
    assert stored.end_time is not None
    assert stored.variables["reviewed"] is True
    assert stored.business_key == "INV-42"


@pytest.mark.asyncio
async def test_two_engines_race_on_one_database(tmp_path, invoice_definition):
    db_path = tmp_path / "procflow.db"
    setup = SQLiteProcessRepository(db_path)
    await setup.save_definition(invoice_definition)
    instance = await ProcessEngine(setup).start(invoice_definition.id, ALICE)

    class SlowRepository(SQLiteProcessRepository):
        async def load_instance(self, instance_id):
            loaded = await super().load_instance(instance_id)
            await asyncio.sleep(0.05)
            return loaded

    first = ProcessEngine(SlowRepository(db_path))
    second = ProcessEngine(SlowRepository(db_path))
    results = await asyncio.gather(
        first.suspend(instance.id, ALICE),
        second.cancel(instance.id, ALICE),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConcurrentModification) for r in results) == 1
    history = await setup.load_history(instance.id)
    assert len(history) == 2
    stored = await setup.load_instance(instance.id)
    assert stored.status in (InstanceStatus.SUSPENDED, InstanceStatus.CANCELLED)


@pytest.mark.asyncio
async def test_variables_keep_their_json_types(tmp_path, invoice_definition):
    repo = SQLiteProcessRepository(tmp_path / "procflow.db")
    await repo.save_definition(invoice_definition)
    engine = ProcessEngine(repo)
    instance = await engine.start(
        invoice_definition.id, ALICE, variables={"flag": 1, "ratio": 0}
    )

    await engine.update_variables(instance.id, {"flag": True, "ratio": 0.0}, ALICE)
    with pytest.raises(InvalidVariables):
        await engine.update_variables(
            instance.id,
            {"due": datetime(2024, 1, 1, tzinfo=timezone.utc), "ids": {1, 2}},
            ALICE,
        )

    stored = await ProcessEngine(SQLiteProcessRepository(tmp_path / "procflow.db")).get_variables(
        instance.id, ALICE
    )
    assert stored["flag"] is True
    assert isinstance(stored["ratio"], float)
    assert "due" not in stored and "ids" not in stored
    assert [e.action.value for e in await engine.get_history(instance.id, ALICE)] == [
        "process_started",
        "update_variables",
    ]
