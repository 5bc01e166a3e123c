#!/usr/bin/env python3
"""
Redis connectivity check.

Usage:
    python scripts/redis_check.py              # PING, SET/GET round trip, server info
    python scripts/redis_check.py --stress     # concurrent command stress test
"""

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

# Add parent directory for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cache.client import RedisConfig, RedisManager, redact_url


async def health_check(manager: RedisManager) -> int:
    print(f"Checking {redact_url(manager.config.url)}...")
    health = await manager.check_health()
    if not health['healthy'] or not health.get('enabled', True):
        print(f"PING: FAILED ({health.get('error')})")
        return 1
    print(f"PING: OK ({health['latency_ms']}ms)")

    client = manager.get_client()
    key = f"kanban:test:{int(time.time())}"
    value = f"health-check-{int(time.time())}"
    await client.set(key, value, ex=60)
    result = await client.get(key)
    await client.delete(key)
    if result != value:
        print(f"SET/GET: FAILED (expected {value!r}, got {result!r})")
        return 1
    print("SET/GET: OK")

    server = await client.info('server')
    replication = await client.info('replication')
    print("Server information:")
    print(f"  Version: {server.get('redis_version')}")
    print(f"  Uptime: {server.get('uptime_in_days')} days")
    print(f"  Clients: {health.get('clients', 'unknown')}")
    print(f"  Memory: {json.dumps(health.get('memory', {}))}")
    print(f"  Role: {replication.get('role')}")
    if replication.get('role') == 'slave':
        print(f"  Master: {replication.get('master_host')}")
        print(f"  Link status: {replication.get('master_link_status')}")
    return 0


async def stress_test(manager: RedisManager, operations: int, concurrency: int) -> int:
    client = manager.get_client()
    if client is None:
        print("Redis is disabled (REDIS_ENABLED=false)")
        return 1

    print(f"Running {operations} PINGs with concurrency {concurrency}...")
    semaphore = asyncio.Semaphore(concurrency)
    failures = 0

    async def one_ping():
        nonlocal failures
        async with semaphore:
            try:
                await client.ping()
            except Exception as e:
                failures += 1
                print(f"  PING failed: {e}")

    start = time.monotonic()
    await asyncio.gather(*(one_ping() for _ in range(operations)))
    elapsed = time.monotonic() - start

    print(f"Completed {operations - failures}/{operations} in {elapsed:.2f}s "
          f"({operations / elapsed:.0f} ops/s)")
    return 1 if failures else 0


async def run(args) -> int:
    config = RedisConfig.from_dict()
    if args.url:
        config.url = args.url
    manager = RedisManager(config)
    try:
        if args.stress:
            return await stress_test(manager, args.operations, args.concurrency)
        return await health_check(manager)
    finally:
        await manager.close_all()


def main() -> int:
    parser = argparse.ArgumentParser(description="Check Redis connectivity for the kanban cache.")
    parser.add_argument("--url", help="Redis URL (default from REDIS_URL)")
    parser.add_argument("--stress", action="store_true", help="Run a concurrent stress test")
    parser.add_argument("--operations", type=int, default=1000, help="Stress test command count")
    parser.add_argument("--concurrency", type=int, default=50, help="Stress test concurrency")
    args = parser.parse_args()
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
