"""Selects a cache backend by name, once, at construction time."""

import logging
from typing import Any, Callable, Dict

from apistash.core.exceptions import ConfigurationError
from apistash.domain.interfaces.cache import CacheBackend

logger = logging.getLogger(__name__)


def _memory(**options: Any) -> CacheBackend:
    from apistash.infrastructure.cache.backends.memory import MemoryBackend

    return MemoryBackend()


def _filesystem(**options: Any) -> CacheBackend:
    from apistash.infrastructure.cache.backends.filesystem import DEFAULT_CACHE_DIR, FileSystemBackend

    return FileSystemBackend(directory=options.get("directory") or DEFAULT_CACHE_DIR)


def _diskcache(**options: Any) -> CacheBackend:
    from apistash.infrastructure.cache.backends.disk import DEFAULT_DISKCACHE_DIR, DiskCacheBackend

    return DiskCacheBackend(directory=options.get("directory") or DEFAULT_DISKCACHE_DIR,
                            namespace=options.get("namespace") or "apistash")


def _redis(**options: Any) -> CacheBackend:
    from apistash.infrastructure.cache.backends.redis_backend import DEFAULT_REDIS_URL, RedisBackend

    return RedisBackend.from_url(options.get("redis_url") or DEFAULT_REDIS_URL,
                                 namespace=options.get("namespace") or "apistash")


_FACTORIES: Dict[str, Callable[..., CacheBackend]] = {
    "memory": _memory,
    "filesystem": _filesystem,
    "diskcache": _diskcache,
    "redis": _redis,
}

BACKEND_NAMES = tuple(_FACTORIES)


def create_backend(name: str, **options: Any) -> CacheBackend:
    """Instantiates the backend called ``name``.

    Args:
        name: One of 'memory', 'filesystem', 'diskcache', 'redis'.
        **options: Backend options (``directory``, ``redis_url``, ``namespace``).

    Raises:
        ConfigurationError: If the name is unknown.
    """
    factory = _FACTORIES.get(str(name).lower())
    if factory is None:
        raise ConfigurationError(
            f"Unknown cache backend '{name}'. Expected one of: {', '.join(BACKEND_NAMES)}"
        )
    logger.debug(f"Creating cache backend '{name}' with options {options}")
    return factory(**options)
