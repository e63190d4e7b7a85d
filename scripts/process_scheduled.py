#!/usr/bin/env python3
"""
Process due scheduled messages — cron entry point.

Usage:
    python scripts/process_scheduled.py               # one batch
    python scripts/process_scheduled.py --limit 200
    python scripts/process_scheduled.py --loop 60     # poll every 60s until stopped

Overlapping runs are safe: every message is claimed before it is sent.
"""
import asyncio
import os
import sys
import argparse
import json

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(limit: int, loop_interval: float) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    import structlog
    from config.settings import ConfigurationError, load_settings
    from core.service import create_messaging_service
    from database.session import close_db, init_db
    from database.store import SqlMessagingStore

    logger = structlog.get_logger()
    settings = load_settings()
    service = create_messaging_service(settings=settings)
    uses_sql = isinstance(service.store, SqlMessagingStore)
    if uses_sql:
        await init_db()

    try:
        while True:
            summary = await service.processor.process_due(limit=limit or None)
            print(json.dumps(summary.to_dict()))
            if not loop_interval:
                return 1 if summary.failed else 0
            await asyncio.sleep(loop_interval)
    except ConfigurationError as e:
        logger.error("process_scheduled_misconfigured", error=str(e))
        return 2
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("process_scheduled_interrupted")
        return 0
    finally:
        await service.close()
        if uses_sql:
            await close_db()


def main():
    parser = argparse.ArgumentParser(description="Send scheduled messages that are due")
    parser.add_argument("--limit", type=int, default=0, help="Max messages per batch (default: config)")
    parser.add_argument("--loop", type=float, default=0, help="Repeat every N seconds")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.limit, args.loop)))


if __name__ == "__main__":
    main()
