import argparse
import asyncio

from core.app_config import load_app_config
from core.queue_names import agent_dead_letter_queue, agent_request_queue
from core.utils import set_loop_policy
from infra.job_queue import JobQueue
from infra.stores import JobStore

set_loop_policy()


async def init_db(*, drop: bool = False) -> None:
    cfg = load_app_config()
    queue_cfg = cfg.queue
    safe_dsn = queue_cfg.postgres_dsn.split("@")[-1] if "@" in queue_cfg.postgres_dsn else "..."
    print(f"Target DB: ...@{safe_dsn} schema={queue_cfg.schema_name}")

    store = JobStore(queue_cfg.postgres_dsn, schema=queue_cfg.schema_name, min_size=1, max_size=2)
    await store.pool.open()
    try:
        if drop:
            confirm = input(f"Drop schema {queue_cfg.schema_name!r} and ALL queued jobs? (y/n): ")
            if confirm.lower() != "y":
                print("Aborted.")
                return
            await store.execute(f"DROP SCHEMA IF EXISTS {store.schema} CASCADE")
            print(f"Dropped schema {store.schema}")

        await store.ensure_schema()
        print(f"Schema {store.schema} ready")

        queue = JobQueue.from_config(store, queue_cfg)
        for agent_name in cfg.agents:
            dead_letter = agent_dead_letter_queue(agent_name) if cfg.dispatcher.dead_letter else None
            created = await queue.create_queue(agent_request_queue(agent_name), dead_letter=dead_letter)
            state = "created" if created else "exists"
            print(f"  {agent_request_queue(agent_name)}: {state}")
    finally:
        await store.pool.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the job queue schema and per-agent request queues.")
    parser.add_argument("--drop", action="store_true", help="Drop the queue schema first (destroys queued jobs).")
    args = parser.parse_args()
    asyncio.run(init_db(drop=args.drop))
