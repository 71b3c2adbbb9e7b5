from .database import Base, GeoCacheEntry, GeoDurableSnapshot

__all__ = [
    "Base",
    "GeoCacheEntry",
    "GeoDurableSnapshot",
]
