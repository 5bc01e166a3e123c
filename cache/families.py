"""Cache families: the key namespaces used for scoped stats and invalidation."""

from enum import Enum
from typing import Union


class CacheKeyError(ValueError):
    """Raised for an unknown family or a malformed cache key."""


class CacheFamily(Enum):
    """Logical partitions of the cache. The value doubles as the key prefix."""
    PROJECTS = "projects"
    TICKETS = "tickets"
    PATTERNS = "patterns"       # change rarely
    MEMORY = "memory"
    AGENTS = "agents"           # near real-time metrics

    @property
    def prefix(self) -> str:
        return f"{self.value}:"

    @property
    def default_ttl(self) -> int:
        return DEFAULT_TTLS[self]


DEFAULT_TTLS = {
    CacheFamily.PROJECTS: 300,
    CacheFamily.TICKETS: 300,
    CacheFamily.PATTERNS: 600,
    CacheFamily.MEMORY: 300,
    CacheFamily.AGENTS: 30,
}

MEMORY_SEARCH_TTL = 120

# Families reported by key statistics on the cache health endpoint
STATISTICS_FAMILIES = (CacheFamily.PATTERNS, CacheFamily.MEMORY, CacheFamily.AGENTS)


def resolve_family(family: Union[str, CacheFamily]) -> CacheFamily:
    """Accept a family name or member; reject anything else."""
    if isinstance(family, CacheFamily):
        return family
    try:
        return CacheFamily(str(family).strip().lower())
    except ValueError:
        valid = ', '.join(f.value for f in CacheFamily)
        raise CacheKeyError(f"Unknown cache family {family!r} (expected one of: {valid})") from None


def build_key(family: Union[str, CacheFamily], key: str) -> str:
    """Namespace a key under its family prefix."""
    fam = resolve_family(family)
    if not isinstance(key, str) or not key.strip():
        raise CacheKeyError(f"Cache key for {fam.value} must be a non-empty string")
    if any(ch in key for ch in ('*', '?', '[', ' ', '\n')):
        raise CacheKeyError(f"Cache key {key!r} contains glob or whitespace characters")
    return f"{fam.prefix}{key}"
