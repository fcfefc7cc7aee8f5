"""
Realtime app: geo-cell presence over a passive document store.

This app provides:
- A document store contract with in-memory and Redis backends
- Presence publishing with a periodic heartbeat
- Nearby-presence aggregation over a 3x3 cell neighborhood
- Push-style event streams and subscription handles

Key Components:
    - store.py: DocumentStore contract, paths, in-memory backend
    - redis_store.py: Redis backend (pub/sub change feed, native key expiry)
    - presence.py: PresenceStore (publish, heartbeat, go offline)
    - aggregator.py: PresenceAggregator (live counts and nearby records)
    - streams.py: EventStream / Subscription

Usage:
    from realtime.store import get_document_store
    from realtime.presence import PresenceStore
    from realtime.aggregator import PresenceAggregator
"""
