"""Example showing how to run the journey worker against the configured backends.

Point ``JOURNEYFLOW_CONFIG`` at a YAML file selecting e.g. the Redis transport
and a Postgres ``database_url`` before running.
"""

import asyncio
import sys

from journeyflow import JourneyEngine, JourneyWorker


async def main():
    lifespan = float(sys.argv[1]) if len(sys.argv) > 1 else None

    engine = JourneyEngine.from_config()
    worker = JourneyWorker(engine)

    await worker.start(lifespan=lifespan)


if __name__ == "__main__":
    asyncio.run(main())
