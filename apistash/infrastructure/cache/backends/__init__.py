"""Cache storage backends and the name-based backend factory."""

from apistash.infrastructure.cache.backends.factory import BACKEND_NAMES, create_backend

__all__ = ["BACKEND_NAMES", "create_backend"]
