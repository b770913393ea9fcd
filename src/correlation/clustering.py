from __future__ import annotations

import hashlib
from dataclasses import replace
from datetime import date, timedelta
from typing import Dict, Iterable, List, Sequence, Tuple

from correlation.models import Campaign, CorrelationConfig, EnrichedThreatEvent

SEVERITY_ORDER = ("critical", "high", "medium", "low")
DEFAULT_SEVERITY = "medium"

CampaignCluster = Tuple[Campaign, List[EnrichedThreatEvent]]


def _ordered_unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v is not None))


def pick_max_severity(severities: Iterable[str]) -> str:
    """Highest of critical > high > medium > low; medium when none is known."""
    present = {str(s).lower() for s in severities if s}
    for level in SEVERITY_ORDER:
        if level in present:
            return level
    return DEFAULT_SEVERITY


def generate_campaign_id(event_ids: Iterable[int], day: date) -> str:
    """
    C-<YYYYMMDD>-<first 8 hex of sha256 over the numerically sorted,
    comma-joined event ids>. Same ids and day always give the same id.
    """
    joined = ",".join(str(i) for i in sorted(event_ids))
    digest = hashlib.sha256(joined.encode("utf-8")).hexdigest()[:8]
    return f"C-{day.strftime('%Y%m%d')}-{digest}"


def cluster_by_time_window(
    events: Sequence[EnrichedThreatEvent], window_minutes: int
) -> List[List[EnrichedThreatEvent]]:
    """
    Splits time-sorted events into clusters. An event joins the current
    cluster while it is within `window_minutes` of that cluster's FIRST event.
    """
    if not events:
        return []
    ordered = sorted(events, key=lambda e: e.timestamp)
    window = timedelta(minutes=window_minutes)

    clusters: List[List[EnrichedThreatEvent]] = [[ordered[0]]]
    for event in ordered[1:]:
        anchor = clusters[-1][0].timestamp
        if event.timestamp - anchor <= window:
            clusters[-1].append(event)
        else:
            clusters.append([event])
    return clusters


def pattern_key(event: EnrichedThreatEvent) -> str:
    return f"{event.attack_type}|{','.join(sorted(event.mitre_techniques or []))}"


def _build_campaign(
    members: List[EnrichedThreatEvent], day: date, name: str, campaign_type: str,
    attack_types: List[str], unique_ips: int,
) -> Campaign:
    timestamps = sorted(e.timestamp for e in members)
    return Campaign(
        campaign_id=generate_campaign_id((e.id for e in members), day),
        name=name,
        campaign_type=campaign_type,
        first_seen=timestamps[0],
        last_seen=timestamps[-1],
        event_count=len(members),
        unique_ips=unique_ips,
        attack_types=attack_types,
        mitre_techniques=_ordered_unique(t for e in members for t in (e.mitre_techniques or [])),
        regions=_ordered_unique(e.region for e in members),
        severity=pick_max_severity(e.severity for e in members),
    )


def build_ip_campaigns(
    events: Sequence[EnrichedThreatEvent], config: CorrelationConfig, day: date
) -> List[CampaignCluster]:
    """One campaign per time-window cluster of a single source IP."""
    by_ip: Dict[str, List[EnrichedThreatEvent]] = {}
    for event in events:
        by_ip.setdefault(event.attack_source_ip, []).append(event)

    results: List[CampaignCluster] = []
    for ip, ip_events in by_ip.items():
        if len(ip_events) < config.min_events_for_campaign:
            continue
        for cluster in cluster_by_time_window(ip_events, config.time_window_minutes):
            if len(cluster) < config.min_events_for_campaign:
                continue
            attack_types = _ordered_unique(e.attack_type for e in cluster)
            campaign = _build_campaign(
                cluster, day,
                name=f"IP {ip}: {', '.join(attack_types)}",
                campaign_type="ip_cluster",
                attack_types=attack_types,
                unique_ips=1,
            )
            results.append((campaign, cluster))
    return results


def build_pattern_campaigns(
    events: Sequence[EnrichedThreatEvent], config: CorrelationConfig, day: date
) -> List[CampaignCluster]:
    """
    Groups events by attack type plus technique set. A group becomes a
    campaign only when it spans enough distinct source IPs.
    """
    by_pattern: Dict[str, List[EnrichedThreatEvent]] = {}
    for event in events:
        by_pattern.setdefault(pattern_key(event), []).append(event)

    results: List[CampaignCluster] = []
    for key, members in by_pattern.items():
        distinct_ips = {e.attack_source_ip for e in members}
        if len(distinct_ips) < config.min_ips_for_pattern_campaign:
            continue
        attack_type = key.split("|", 1)[0]
        campaign = _build_campaign(
            members, day,
            name=f"Pattern: {attack_type} from {len(distinct_ips)} IPs",
            campaign_type="pattern_cluster",
            attack_types=[attack_type],
            unique_ips=len(distinct_ips),
        )
        results.append((campaign, members))
    return results


def merge_campaign(existing: Campaign, incoming: Campaign) -> Campaign:
    """
    Merge a re-derived campaign into the stored one. Identity, name, type
    and status are kept; time range widens, counts never shrink, list fields
    are unioned and severity only escalates.
    """
    return replace(
        existing,
        first_seen=min(existing.first_seen, incoming.first_seen),
        last_seen=max(existing.last_seen, incoming.last_seen),
        event_count=max(existing.event_count, incoming.event_count),
        unique_ips=max(existing.unique_ips, incoming.unique_ips),
        attack_types=_ordered_unique(existing.attack_types + incoming.attack_types),
        mitre_techniques=_ordered_unique(existing.mitre_techniques + incoming.mitre_techniques),
        regions=_ordered_unique(existing.regions + incoming.regions),
        severity=pick_max_severity([existing.severity, incoming.severity]),
    )
