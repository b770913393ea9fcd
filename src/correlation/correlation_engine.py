from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Set

from correlation.clustering import CampaignCluster, build_ip_campaigns, build_pattern_campaigns, merge_campaign
from correlation.models import (
    CAMPAIGN_STATUSES,
    Campaign,
    CampaignPage,
    CampaignScanResult,
    CampaignStats,
    CorrelationConfig,
    EnrichedThreatEvent,
)
from correlation.store import ThreatStore, ThreatStoreTransaction

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
TOP_ATTACK_TYPES = 10

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CorrelationError(Exception):
    pass


class ScanInProgressError(CorrelationError):
    pass


class CorrelationEngine:
    """
    Groups unclustered enriched threat events into campaigns.

    A scan reads, clusters and writes inside one store transaction. Only one
    scan may run at a time per engine; an overlapping call fails fast with
    ScanInProgressError instead of waiting.
    """

    def __init__(self, store: ThreatStore, config: Optional[CorrelationConfig] = None, clock: Clock = utc_now):
        self.store = store
        self.config = config or CorrelationConfig()
        self.clock = clock
        self._scan_lock = threading.Lock()

    def scan_for_campaigns(self) -> CampaignScanResult:
        if not self._scan_lock.acquire(blocking=False):
            logger.warning("Campaign scan requested while another scan is running")
            raise ScanInProgressError("A campaign scan is already running")

        try:
            started = time.monotonic()
            try:
                with self.store.transaction() as tx:
                    new, updated, correlated = self._scan(tx)
            except Exception as e:
                logger.error(f"Campaign scan failed and was rolled back: {e}", exc_info=True)
                raise

            result = CampaignScanResult(
                new_campaigns=new,
                updated_campaigns=updated,
                events_correlated=correlated,
                duration=(time.monotonic() - started) * 1000.0,
            )
            logger.info(
                f"Campaign scan finished: {new} new, {updated} updated, "
                f"{correlated} events correlated in {result.duration:.1f}ms"
            )
            return result
        finally:
            self._scan_lock.release()

    def _scan(self, tx: ThreatStoreTransaction):
        now = self.clock()
        since = now - timedelta(hours=self.config.scan_window_hours)
        day = now.astimezone(timezone.utc).date()

        events = tx.fetch_unclustered(since)
        if not events:
            logger.debug("No unclustered events in scan window")
            return 0, 0, 0

        logger.debug(f"Correlating {len(events)} unclustered events since {since.isoformat()}")

        ip_clusters = build_ip_campaigns(events, self.config, day)
        new, updated, correlated = self._persist(tx, ip_clusters)

        assigned: Set[int] = {e.id for _, members in ip_clusters for e in members}
        remaining = [e for e in events if e.id not in assigned]
        pattern_clusters = build_pattern_campaigns(remaining, self.config, day)
        p_new, p_updated, p_correlated = self._persist(tx, pattern_clusters)

        return new + p_new, updated + p_updated, correlated + p_correlated

    def _persist(self, tx: ThreatStoreTransaction, clusters: List[CampaignCluster]):
        new = updated = correlated = 0
        for campaign, members in clusters:
            existing = tx.get_campaign(campaign.campaign_id)
            if existing is None:
                tx.save_campaign(campaign)
                new += 1
            else:
                tx.save_campaign(merge_campaign(existing, campaign))
                updated += 1
            tx.tag_events(campaign.campaign_id, [e.id for e in members])
            correlated += len(members)
            logger.debug(f"Campaign {campaign.campaign_id} ({campaign.name}): {len(members)} events")
        return new, updated, correlated

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.store.get_campaign(campaign_id)

    def list_campaigns(self, page: int = 1, limit: int = 50, status: Optional[str] = None) -> CampaignPage:
        if status is not None and status not in CAMPAIGN_STATUSES:
            raise ValueError(f"Invalid campaign status {status!r}, expected one of {CAMPAIGN_STATUSES}")
        safe_limit = min(max(1, int(limit)), MAX_PAGE_SIZE)
        safe_page = max(1, int(page))
        return self.store.list_campaigns(safe_page, safe_limit, status)

    def get_campaign_events(self, campaign_id: str) -> List[EnrichedThreatEvent]:
        return self.store.get_campaign_events(campaign_id)

    def get_campaign_stats(self) -> CampaignStats:
        return self.store.campaign_stats(top_n=TOP_ATTACK_TYPES)
