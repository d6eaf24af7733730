"""Walk an invoice through the seeded approval process."""

import asyncio
from pathlib import Path

from procflow import Actor, DefinitionCatalog, ProcessEngine, read_definitions
from procflow.persistence import InMemoryProcessRepository


async def main():
    """Start an invoice approval and complete every step."""
    repository = InMemoryProcessRepository()
    catalog = DefinitionCatalog(repository)
    engine = ProcessEngine(repository)
    clerk = Actor(id="clerk@example.com", tenant_id="acme")
    manager = Actor(id="manager@example.com", tenant_id="acme")

    # Store the seed definitions
    for definition in read_definitions(Path(__file__).with_name("definitions.yaml")):
        await catalog.create(definition, clerk)
    (invoice,) = await catalog.list(clerk, search="invoice")

    instance = await engine.start(
        invoice.id, clerk, variables={"amount": 1200, "supplier": "ACME Ltd"}
    )
    print(f"Started {instance.business_key} at {instance.current_step}")

    instance = await engine.complete_task(instance.id, clerk)
    instance = await engine.complete_task(instance.id, clerk, {"invoice_no": "A-1"})
    instance = await engine.complete_task(instance.id, manager, {"approved": True})
    instance = await engine.complete_task(instance.id, clerk, {"transfer_id": "T-99"})
    print(f"Status: {instance.status.value} after {instance.duration}")

    for entry in await engine.get_history(instance.id, clerk):
        print(f"#{entry.sequence} {entry.action.value} by {entry.actor}")

    for step in await engine.get_steps(instance.id, clerk):
        print(f"{step.node_id}: {step.state.value}")


if __name__ == "__main__":
    asyncio.run(main())
