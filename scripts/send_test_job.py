#!/usr/bin/env python3
"""Route a synthetic job through the hybrid router and print the outcome."""

import asyncio
import json
import sys

from search_sync.core.logging import setup_logging
from search_sync.dependencies import build_pipeline
from search_sync.schemas.changes import EntityKind


async def send_test_job(entity_kind: EntityKind) -> None:
    """Submit one synthetic job and report routing status."""
    setup_logging()
    pipeline = await build_pipeline()

    try:
        print(f"Routing status before: {pipeline.admin.get_routing_status().model_dump_json()}")

        result = await pipeline.admin.submit_test_job(entity_kind)
        print(f"Result: {json.dumps(result.model_dump(mode='json'), indent=2)}")

        if result.fell_back:
            print(f"✗ Queue service failed, job fell back to legacy: {result.error}")
        else:
            print(f"✓ Job accepted by the {result.backend} backend")
    finally:
        await pipeline.aclose()


if __name__ == "__main__":
    kind = EntityKind(sys.argv[1]) if len(sys.argv) > 1 else EntityKind.LISTING
    asyncio.run(send_test_job(kind))
