#!/usr/bin/env python3
"""
One-time database setup script for the flow engine.

- Creates the MongoDB indexes used by the flow store
- Seeds (upserts) the built-in flows
- Optionally publishes extra flow documents from JSON files

Usage:
    python scripts/seed_flows.py [path/to/flow.json ...]
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path to import app modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.services.flow_catalog import FlowCatalog
from app.services.tool_service import ToolService
from app.utils.lifecycle import build_store
from app.workflows.schema import validate_flow_payload

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def seed_flows(paths):
    if settings.storage_backend != "mongo":
        logger.error("STORAGE_BACKEND must be 'mongo' to seed a persistent store")
        return 1

    store = build_store(settings)
    failures = 0
    try:
        if not await store.ping():
            logger.error("MongoDB is not reachable")
            return 1
        logger.info("Creating flow store indexes...")
        await store.create_indexes()

        catalog = FlowCatalog(store, settings.default_flow_slug)
        known_tools = ToolService().tool_names()
        seeded = await catalog.ensure_built_in_flows(known_tools)
        logger.info(f"✓ Built-in flows seeded: {seeded}")

        for path in paths:
            try:
                document = json.loads(Path(path).read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Cannot read flow file {path}: {e}")
                failures += 1
                continue
            result = validate_flow_payload(document, known_tools)
            if not result["is_valid"]:
                logger.error(f"Flow file {path} is invalid:")
                for error in result["errors"]:
                    logger.error(f"  - {error}")
                failures += 1
                continue
            await catalog.save(result["flow"])
            logger.info(f"✓ Published flow '{result['flow'].slug}' from {path}")
    finally:
        await store.close()
        logger.info("MongoDB connection closed")

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(seed_flows(sys.argv[1:])))
