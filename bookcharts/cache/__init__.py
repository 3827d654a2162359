from bookcharts.cache.metadata_cache import CacheStats, MemoryCache, MultiTierCache
from bookcharts.cache.snapshot_cache import BestsellerSnapshotCache

__all__ = [
    "BestsellerSnapshotCache",
    "CacheStats",
    "MemoryCache",
    "MultiTierCache",
]
