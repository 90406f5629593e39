"""
Storage collaborators for the engine.

- interfaces: durable transaction store, position store, local cache, price lookup
- firestore_store: Firestore-backed implementations (Firebase Admin SDK)
- local_cache: per-user JSON-file and in-memory fallback caches
- memory: in-memory stores for local runs and tests
"""
