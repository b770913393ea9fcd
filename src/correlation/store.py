from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional, Sequence

from correlation.models import Campaign, CampaignPage, CampaignStats, EnrichedThreatEvent


class ThreatStoreTransaction(ABC):
    """Unit of work for one correlation scan. Nothing is visible until commit."""

    @abstractmethod
    def fetch_unclustered(self, since: datetime) -> List[EnrichedThreatEvent]:
        """Events with no campaign received after `since`, oldest timestamp first."""

    @abstractmethod
    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    def save_campaign(self, campaign: Campaign) -> None:
        ...

    @abstractmethod
    def tag_events(self, campaign_id: str, event_ids: Sequence[int]) -> None:
        ...


class ThreatStore(ABC):
    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """
        Context manager yielding a ThreatStoreTransaction. Commits on normal
        exit and rolls back everything on any exception.
        """

    @abstractmethod
    def insert_enriched_threat(self, event: EnrichedThreatEvent) -> Optional[int]:
        """Returns the new id, or None when the event hash is already stored."""

    @abstractmethod
    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    def list_campaigns(self, page: int, limit: int, status: Optional[str] = None) -> CampaignPage:
        ...

    @abstractmethod
    def get_campaign_events(self, campaign_id: str) -> List[EnrichedThreatEvent]:
        ...

    @abstractmethod
    def campaign_stats(self, top_n: int = 10) -> CampaignStats:
        ...
