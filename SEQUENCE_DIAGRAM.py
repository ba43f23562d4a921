"""
Sequence Diagram: Snapshot Dispatch

This file contains ASCII sequence diagrams showing how components interact.
"""

BASIC_FLOW = """
┌──────────────┐     ┌──────────────┐     ┌──────────────┐     ┌──────────────┐
│   Consumer   │     │  Dispatcher  │     │   Worker 1   │     │    Store     │
│ (HTTP / SDK) │     │   (aiohttp)  │     │  (Machine 2) │     │ (Redis/mem)  │
└──────┬───────┘     └──────┬───────┘     └──────┬───────┘     └──────┬───────┘
       │                    │                    │                    │
       │                    │ 1. GET /ws         │                    │
       │                    │    Basic auth      │                    │
       │                    │<───────────────────│                    │
       │                    │                    │                    │
       │                    │ 2. Check allow-list│                    │
       │                    │    register + ACTIVE                    │
       │                    │                    │                    │
       │ 3. POST /task      │                    │                    │
       │    {"key":"alice"} │                    │                    │
       │ ──────────────────>│                    │                    │
       │                    │                    │                    │
       │ 4. {"success":true,│ 5. Enqueue (dedup) │                    │
       │     "queued":true} │    assign_tasks    │                    │
       │ <──────────────────│                    │                    │
       │                    │                    │                    │
       │                    │ 6. {"key":"alice"} │                    │
       │                    │───────────────────>│                    │
       │                    │                    │                    │
       │                    │                    │ 7. fetch("alice")  │
       │                    │                    │    ┌───────────┐   │
       │                    │                    │    │ scrape or │   │
       │                    │                    │    │ API call  │   │
       │                    │                    │    └───────────┘   │
       │                    │                    │                    │
       │                    │ 8. {"key":"alice", │                    │
       │                    │     "result":{..}} │                    │
       │                    │<───────────────────│                    │
       │                    │                    │                    │
       │                    │ 9. upsert(record)  │                    │
       │                    │────────────────────────────────────────>│
       │                    │                    │                    │
       │                    │ 10. Release slot,  │                    │
       │                    │     assign next    │                    │
       │                    │     queued key     │                    │
       │                    │───────────────────>│                    │
       │                    │                    │                    │
       │ 11. GET /record/alice                   │                    │
       │ ──────────────────>│ 12. query + age    │                    │
       │                    │────────────────────────────────────────>│
       │ 13. fresh record   │                    │                    │
       │ <──────────────────│                    │                    │
       │                    │                    │                    │
"""

FAILURE_AND_DISCONNECT = """
┌──────────────┐                    ┌──────────────┐     ┌──────────────┐
│  Dispatcher  │                    │   Worker 1   │     │   Worker 2   │
└──────┬───────┘                    └──────┬───────┘     └──────┬───────┘
       │                                   │                    │
       │ {"key":"bob"}                     │                    │
       │──────────────────────────────────>│                    │
       │                                   │                    │
       │ {"key":"bob","error":"timeout"}   │                    │
       │<──────────────────────────────────│                    │
       │                                   │                    │
       │ Release slot, retry policy says   │                    │
       │ requeue, bob goes to queue tail   │                    │
       │                                   │                    │
       │ {"key":"bob"}  (next free slot)   │                    │
       │──────────────────────────────────>│                    │
       │                                   │                    │
       │            ✗ socket drops         │                    │
       │<─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─ │                    │
       │                                   │                    │
       │ on_worker_disconnect:             │                    │
       │   remove worker, requeue {bob}    │                    │
       │                                   │                    │
       │ {"key":"bob"}                     │                    │
       │───────────────────────────────────────────────────────>│
       │                                   │                    │
       │                                   │ reconnect after    │
       │                                   │ reconnect_delay    │
       │ GET /ws (new worker id)           │                    │
       │<──────────────────────────────────│                    │
       │                                   │                    │

  Bad credentials: the dispatcher closes with code 1008 "Unauthorized"
  and the worker stops without reconnecting.
"""

FRESHNESS_READ = """
┌─────────────────────────────────────────────────────────────────────────────┐
│                        FreshnessCache.read(keys)                            │
├─────────────────────────────────────────────────────────────────────────────┤
│                                                                             │
│  1. Dedupe keys, keep input order                                          │
│  2. now = clock()          (one timestamp for the whole read)              │
│  3. store.query(keys)                                                      │
│                                                                             │
│        age < max_age   ──────────────────────────────>  FRESH              │
│        age >= max_age  ──┐                                                 │
│        not stored      ──┤                                                 │
│                          ▼                                                 │
│  4. delete_if_stale(key, max_age, now)   (stored keys only)                │
│  5. upstream.fetch(missing, timeout)                                       │
│        concurrent reads of the same key share one fetch                    │
│                                                                             │
│        record arrived  ──────────────────────────────>  FETCHED            │
│        still missing   ──────────────────────────────>  PENDING            │
│                                                                             │
│  Upstreams:                                                                 │
│    DispatcherUpstream  enqueue + wait on completion futures                │
│    GatewayUpstream     POST /task, poll GET /record/{key}                  │
│                                                                             │
└─────────────────────────────────────────────────────────────────────────────┘
"""

REDIS_DATA_STRUCTURES = """
┌─────────────────────────────────────────────────────────────────────────────┐
│                           REDIS DATA STRUCTURES                             │
├─────────────────────────────────────────────────────────────────────────────┤
│                                                                             │
│  Hashes (profile rows):                                                    │
│  ┌───────────────────────────────────────────────────────────────────────┐ │
│  │ snapshots:profile:alice                                               │ │
│  │   attributes   = '{"display_name": "Alice", "joined": "2012"}'        │ │
│  │   last_updated = '2024-01-08T09:30:00+00:00'                          │ │
│  │                                                                       │ │
│  │ → Deleted by delete_if_stale under WATCH/MULTI                        │ │
│  └───────────────────────────────────────────────────────────────────────┘ │
│                                                                             │
│  Hashes (history, append-only):                                            │
│  ┌───────────────────────────────────────────────────────────────────────┐ │
│  │ snapshots:history:alice                                               │ │
│  │   "Alice" = '2024-01-01T00:00:00+00:00'                               │ │
│  │   "Ally"  = '2024-01-08T09:30:00+00:00'                               │ │
│  │                                                                       │ │
│  │ → HSETNX: a value is recorded once, with its first capture time       │ │
│  │ → Survives profile deletion                                           │ │
│  └───────────────────────────────────────────────────────────────────────┘ │
│                                                                             │
│  Note: the task queue and worker registry live in the dispatcher process.  │
│        Redis only holds profiles and their history.                        │
│                                                                             │
└─────────────────────────────────────────────────────────────────────────────┘
"""

if __name__ == "__main__":
    print("=" * 80)
    print("SNAPSHOT DISPATCH SEQUENCE DIAGRAM")
    print("=" * 80)
    print(BASIC_FLOW)

    print("\n" + "=" * 80)
    print("FAILURES AND DISCONNECTS")
    print("=" * 80)
    print(FAILURE_AND_DISCONNECT)

    print("\n" + FRESHNESS_READ)

    print("\n" + REDIS_DATA_STRUCTURES)
