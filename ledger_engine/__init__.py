"""
Position & ledger engine.

Turns an unordered, possibly concurrently edited stream of buy/sell
transactions into deterministic WAC valuations and durable per-episode
Position records that survive offline writes, reordering and replay.
"""
