"""Resource sizing, tiers and Kubernetes quantity helpers."""

from enum import StrEnum

from pydantic import BaseModel, Field

from wsplane.core.errors import ValidationError


class ResourceSpec(BaseModel):
    """CPU/memory/storage request for one workspace."""

    cpu: str = Field(min_length=1, max_length=16)
    memory: str = Field(min_length=1, max_length=16)
    storage: str = Field(min_length=1, max_length=16)

    model_config = {"frozen": True}


class ResourceQuota(BaseModel):
    """Namespace-wide quota for one group."""

    cpu: str = Field(min_length=1, max_length=16)
    memory: str = Field(min_length=1, max_length=16)
    storage: str = Field(min_length=1, max_length=16)
    pods: int = Field(ge=1)

    model_config = {"frozen": True}

    def to_hard_limits(self) -> dict[str, str]:
        """Convert to ResourceQuota spec.hard."""
        return {
            "requests.cpu": self.cpu,
            "requests.memory": self.memory,
            "limits.cpu": self.cpu,
            "limits.memory": self.memory,
            "requests.storage": self.storage,
            "pods": str(self.pods),
        }


class ResourceTier(StrEnum):
    """Named sizing preset."""

    SINGLE_USER = "single-user"
    SMALL_TEAM = "small-team"
    ENTERPRISE = "enterprise"


TIERS: dict[ResourceTier, ResourceSpec] = {
    ResourceTier.SINGLE_USER: ResourceSpec(cpu="1", memory="2Gi", storage="20Gi"),
    ResourceTier.SMALL_TEAM: ResourceSpec(cpu="2", memory="4Gi", storage="20Gi"),
    # Placeholder sizing until enterprise tiers are negotiated per customer
    ResourceTier.ENTERPRISE: ResourceSpec(cpu="2", memory="4Gi", storage="20Gi"),
}


def resolve_resources(
    explicit: ResourceSpec | None,
    tier: ResourceTier | str | None,
    default_tier: ResourceTier | str,
) -> ResourceSpec:
    """Resolve sizing: explicit override > named tier > default tier."""
    if explicit is not None:
        return explicit
    try:
        if tier is not None:
            return TIERS[ResourceTier(tier)]
        return TIERS[ResourceTier(default_tier)]
    except ValueError:
        raise ValidationError(f"Unknown resource tier: {tier or default_tier!r}") from None


# =============================================================================
# Quantity parsing (metrics aggregation)
# =============================================================================

_BINARY_UNITS = {"Ki": 1024, "Mi": 1024**2, "Gi": 1024**3, "Ti": 1024**4}
_DECIMAL_UNITS = {"k": 10**3, "M": 10**6, "G": 10**9, "T": 10**12}
_CPU_UNITS = {"n": 1e-9, "u": 1e-6, "m": 1e-3}


def parse_cpu(value: str) -> float:
    """Parse a CPU quantity ("250m", "2", "1500000n") into cores."""
    value = value.strip()
    if value and value[-1] in _CPU_UNITS:
        return float(value[:-1]) * _CPU_UNITS[value[-1]]
    return float(value)


def parse_memory(value: str) -> float:
    """Parse a memory/storage quantity ("512Mi", "4Gi", "1G") into bytes."""
    value = value.strip()
    for suffix, multiplier in _BINARY_UNITS.items():
        if value.endswith(suffix):
            return float(value[: -len(suffix)]) * multiplier
    for suffix, multiplier in _DECIMAL_UNITS.items():
        if value.endswith(suffix):
            return float(value[: -len(suffix)]) * multiplier
    return float(value)


def format_memory(num_bytes: float) -> str:
    """Format bytes using the largest binary unit that fits."""
    for suffix in ("Gi", "Mi", "Ki"):
        size = _BINARY_UNITS[suffix]
        if num_bytes >= size:
            return f"{num_bytes / size:.1f}{suffix}"
    return f"{int(num_bytes)}"


def percentage(used: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return round(used / total * 100, 2)


def usage_snapshot(
    cpu_cores: float, memory_bytes: float, pods: int, quota: ResourceQuota
) -> dict:
    """Build the persisted usage snapshot against the group quota.

    Storage usage is not reported by the metrics API and is always zero.
    """
    cpu_total = parse_cpu(quota.cpu)
    memory_total = parse_memory(quota.memory)
    return {
        "cpu": {
            "used": f"{cpu_cores:.3f}",
            "total": quota.cpu,
            "percentage": percentage(cpu_cores, cpu_total),
        },
        "memory": {
            "used": format_memory(memory_bytes),
            "total": quota.memory,
            "percentage": percentage(memory_bytes, memory_total),
        },
        "storage": {"used": "0", "total": quota.storage, "percentage": 0.0},
        "pods": {
            "used": pods,
            "total": quota.pods,
            "percentage": percentage(pods, quota.pods),
        },
    }
