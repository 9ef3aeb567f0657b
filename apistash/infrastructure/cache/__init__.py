"""Caching Service Implementation.

Provides the expiring cache store, its record encoding/compression and
the pluggable storage backends (memory, filesystem, diskcache, redis).
Bounded Context: Cache Management
"""
