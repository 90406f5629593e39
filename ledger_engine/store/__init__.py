"""
Transaction store façade: dual-write with timeout, offline fallback and resync.
"""
