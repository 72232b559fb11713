"""
Load test: fire many concurrent lock requests at the app to validate mutual exclusion.

Usage:
1. Start Redis and the app (see tests/integration/seat_lock_flow.py).
2. Run this script:
   python tests/load/seat_lock_stress.py

Environment variables:
- APP_URL (default http://localhost:8000)
- CONCURRENT_REQUESTS (default 1000)
- SEAT_COUNT (default 40)
- SHORT_TTL_CHECK (default 0; set to the app's LOCK_TTL_SECONDS to also wait for expiry)

The script will:
- Fire `CONCURRENT_REQUESTS` lock attempts from distinct guests, each for one or two random seats
- Report success/conflict/ceiling/error counts and latency percentiles
- Verify every locked seat has exactly one owner by reading each guest's locks back
- Optionally wait out the TTL and check the trip has no live locks left
"""

import asyncio
import os
import random
import statistics
import time
from uuid import uuid4

import httpx

APP_URL = os.environ.get('APP_URL', 'http://localhost:8000')
CONCURRENT = int(os.environ.get('CONCURRENT_REQUESTS', '1000'))
SEAT_COUNT = int(os.environ.get('SEAT_COUNT', '40'))
SHORT_TTL_CHECK = int(os.environ.get('SHORT_TTL_CHECK', '0'))

RESULTS = {201: 'locked', 409: 'conflict', 503: 'unavailable'}


async def attempt_lock(client, trip_id, seat_codes):
    headers = {'X-Guest-Session': f'stress-{uuid4().hex}'}
    t0 = time.perf_counter()
    resp = await client.post(f'/trips/{trip_id}/seats/lock', json={'seat_codes': seat_codes}, headers=headers)
    latency_ms = (time.perf_counter() - t0) * 1000
    result = RESULTS.get(resp.status_code, f'error_{resp.status_code}')
    return {'result': result, 'latency': latency_ms, 'headers': headers, 'seats': seat_codes}


async def run_concurrency(trip_id, seats):
    limits = httpx.Limits(max_connections=200)
    async with httpx.AsyncClient(base_url=APP_URL, timeout=10.0, limits=limits) as client:
        tasks = [
            attempt_lock(client, trip_id, random.sample(seats, random.choice((1, 2))))
            for _ in range(CONCURRENT)
        ]
        return await asyncio.gather(*tasks)


async def check_single_owner(trip_id, results):
    owners = {}
    async with httpx.AsyncClient(base_url=APP_URL, timeout=10.0) as client:
        for r in results:
            if r['result'] != 'locked':
                continue
            resp = await client.get(f'/trips/{trip_id}/seats/my-locks', headers=r['headers'])
            for lock in resp.json()['locks']:
                owners.setdefault(lock['seat_code'], []).append(r['headers']['X-Guest-Session'])
        public = (await client.get(f'/trips/{trip_id}/seats/locks')).json()
    dupes = {seat: who for seat, who in owners.items() if len(who) > 1}
    return dupes, set(owners) == set(public['locked_seats'])


async def check_expiry(trip_id):
    print(f'Waiting {SHORT_TTL_CHECK + 1}s for locks to expire...')
    await asyncio.sleep(SHORT_TTL_CHECK + 1)
    async with httpx.AsyncClient(base_url=APP_URL, timeout=10.0) as client:
        resp = await client.get(f'/trips/{trip_id}/seats/locks')
        return resp.json()['count'] == 0


async def main():
    trip_id = f'stress-{uuid4().hex[:8]}'
    seats = [f'{row}{col}' for row in range(1, SEAT_COUNT // 4 + 1) for col in 'ABCD'][:SEAT_COUNT]
    print('Trip id:', trip_id, 'seats:', len(seats))

    print(f'Running {CONCURRENT} concurrent lock attempts...')
    start = time.perf_counter()
    results = await run_concurrency(trip_id, seats)
    duration = time.perf_counter() - start
    print('Completed in %.2fs' % duration)

    counts = {}
    for r in results:
        counts[r['result']] = counts.get(r['result'], 0) + 1
    print('Result counts:', counts)
    latencies = [r['latency'] for r in results]
    if len(latencies) > 1:
        print('latency ms: mean=%.2f p50=%.2f p95=%.2f max=%.2f' % (
            statistics.mean(latencies),
            statistics.median(latencies),
            statistics.quantiles(latencies, n=100)[94],
            max(latencies),
        ))

    dupes, consistent = await check_single_owner(trip_id, results)
    if dupes:
        print('DOUBLE-LOCKED SEATS FOUND:', dupes)
    else:
        print('No seat has more than one owner: OK')
    print('Owner view matches trip view:', 'OK' if consistent else 'MISMATCH')

    if SHORT_TTL_CHECK:
        print('Expiry check:', 'OK' if await check_expiry(trip_id) else 'FAILED')


if __name__ == '__main__':
    asyncio.run(main())
