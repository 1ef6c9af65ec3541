"""Push the built-in tool definitions to the configured assistant.

Usage:
    python scripts/sync_assistant_tools.py            # update the assistant
    python scripts/sync_assistant_tools.py --dry-run  # print the definitions only
"""
import argparse
import asyncio
import json
import logging

from app.config import configure_logging
from app.services.assistant_client import get_assistant_client
from app.tools.registry import build_default_registry

logger = logging.getLogger(__name__)


async def main(dry_run: bool) -> None:
    tools = build_default_registry().schemas()
    if dry_run:
        print(json.dumps(tools, indent=2))
        return
    await get_assistant_client().sync_tools(tools)
    logger.info(f"Assistant updated with {len(tools)} tools")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="print tool definitions and exit")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(main(args.dry_run))
