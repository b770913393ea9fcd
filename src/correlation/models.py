from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

SOURCE_TYPES = ("guard", "trap", "external_feed")
CAMPAIGN_TYPES = ("ip_cluster", "pattern_cluster", "manual")
CAMPAIGN_STATUSES = ("active", "resolved", "false_positive")


@dataclass
class EnrichedThreatEvent:
    """
    A threat event after enrichment, as stored by the event store.

    `id` is assigned by the store on insert and is None before that.
    Timestamps are timezone-aware UTC.
    """
    source_type: str
    attack_source_ip: str
    attack_type: str
    timestamp: datetime
    event_hash: str
    mitre_techniques: List[str] = field(default_factory=list)
    sigma_rule_matched: str = ""
    region: str = ""
    confidence: float = 0.0
    severity: str = "medium"
    industry: Optional[str] = None
    service_type: Optional[str] = None
    skill_level: Optional[str] = None
    intent: Optional[str] = None
    tools: Optional[List[str]] = None
    received_at: Optional[datetime] = None
    campaign_id: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.source_type not in SOURCE_TYPES:
            raise ValueError(f"Invalid source_type {self.source_type!r}, expected one of {SOURCE_TYPES}")


@dataclass
class Campaign:
    campaign_id: str
    name: str
    campaign_type: str
    first_seen: datetime
    last_seen: datetime
    event_count: int
    unique_ips: int
    attack_types: List[str] = field(default_factory=list)
    mitre_techniques: List[str] = field(default_factory=list)
    regions: List[str] = field(default_factory=list)
    severity: str = "medium"
    status: str = "active"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.campaign_type not in CAMPAIGN_TYPES:
            raise ValueError(f"Invalid campaign_type {self.campaign_type!r}")
        if self.status not in CAMPAIGN_STATUSES:
            raise ValueError(f"Invalid status {self.status!r}")

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("first_seen", "last_seen", "created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class CampaignScanResult:
    new_campaigns: int = 0
    updated_campaigns: int = 0
    events_correlated: int = 0
    duration: float = 0.0  # milliseconds

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CampaignStats:
    total_campaigns: int
    active_campaigns: int
    total_correlated_events: int
    top_attack_types: Tuple[Tuple[str, int], ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_campaigns": self.total_campaigns,
            "active_campaigns": self.active_campaigns,
            "total_correlated_events": self.total_correlated_events,
            "top_attack_types": [{"type": t, "count": c} for t, c in self.top_attack_types],
        }


@dataclass(frozen=True)
class CampaignPage:
    items: Tuple[Campaign, ...]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.limit + self.limit < self.total


@dataclass(frozen=True)
class CorrelationConfig:
    time_window_minutes: int = 60
    min_events_for_campaign: int = 3
    min_ips_for_pattern_campaign: int = 5
    scan_window_hours: int = 24

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"correlation.{f.name} must be a positive number, got {value!r}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CorrelationConfig":
        """Builds a config from a YAML section; unknown keys are ignored."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})
