"""
SQLAlchemy-backed threat event and campaign store.

SQLite is used by default; any SQLAlchemy URL works. Datetimes are stored
as naive UTC and handed back as timezone-aware UTC.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, create_engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from correlation.models import Campaign, CampaignPage, CampaignStats, EnrichedThreatEvent
from correlation.store import ThreatStore, ThreatStoreTransaction

logger = logging.getLogger(__name__)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class ThreatRow(Base):
    """Persisted enriched threat event."""

    __tablename__ = "enriched_threats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_type = Column(String(32), nullable=False)
    attack_source_ip = Column(String(64), nullable=False, index=True)
    attack_type = Column(String(128), nullable=False)
    mitre_techniques = Column(JSON, default=list)
    sigma_rule_matched = Column(String(255), default="")
    timestamp = Column(DateTime, nullable=False, index=True)
    industry = Column(String(128), nullable=True)
    region = Column(String(64), default="")
    confidence = Column(Float, default=0.0)
    severity = Column(String(16), default="medium")
    service_type = Column(String(64), nullable=True)
    skill_level = Column(String(64), nullable=True)
    intent = Column(String(128), nullable=True)
    tools = Column(JSON, nullable=True)
    event_hash = Column(String(128), nullable=False, unique=True)
    received_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    campaign_id = Column(String(32), nullable=True, index=True)


class CampaignRow(Base):
    """Persisted campaign."""

    __tablename__ = "campaigns"

    campaign_id = Column(String(32), primary_key=True)
    name = Column(String(255), nullable=False)
    campaign_type = Column(String(32), nullable=False)
    first_seen = Column(DateTime, nullable=False)
    last_seen = Column(DateTime, nullable=False, index=True)
    event_count = Column(Integer, nullable=False, default=0)
    unique_ips = Column(Integer, nullable=False, default=0)
    attack_types = Column(JSON, default=list)
    mitre_techniques = Column(JSON, default=list)
    regions = Column(JSON, default=list)
    severity = Column(String(16), nullable=False, default="medium")
    status = Column(String(32), nullable=False, default="active", index=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow)


def _threat_from_row(row: ThreatRow) -> EnrichedThreatEvent:
    return EnrichedThreatEvent(
        id=row.id,
        source_type=row.source_type,
        attack_source_ip=row.attack_source_ip,
        attack_type=row.attack_type,
        mitre_techniques=list(row.mitre_techniques or []),
        sigma_rule_matched=row.sigma_rule_matched or "",
        timestamp=_from_db(row.timestamp),
        industry=row.industry,
        region=row.region or "",
        confidence=row.confidence or 0.0,
        severity=row.severity,
        service_type=row.service_type,
        skill_level=row.skill_level,
        intent=row.intent,
        tools=list(row.tools) if row.tools is not None else None,
        event_hash=row.event_hash,
        received_at=_from_db(row.received_at),
        campaign_id=row.campaign_id,
    )


def _campaign_from_row(row: CampaignRow) -> Campaign:
    return Campaign(
        campaign_id=row.campaign_id,
        name=row.name,
        campaign_type=row.campaign_type,
        first_seen=_from_db(row.first_seen),
        last_seen=_from_db(row.last_seen),
        event_count=row.event_count,
        unique_ips=row.unique_ips,
        attack_types=list(row.attack_types or []),
        mitre_techniques=list(row.mitre_techniques or []),
        regions=list(row.regions or []),
        severity=row.severity,
        status=row.status,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


class SqlThreatStoreTransaction(ThreatStoreTransaction):
    def __init__(self, session: Session):
        self.session = session

    def fetch_unclustered(self, since: datetime) -> List[EnrichedThreatEvent]:
        stmt = (
            select(ThreatRow)
            .where(ThreatRow.campaign_id.is_(None), ThreatRow.received_at > _to_db(since))
            .order_by(ThreatRow.timestamp.asc(), ThreatRow.id.asc())
        )
        return [_threat_from_row(row) for row in self.session.scalars(stmt)]

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        row = self.session.get(CampaignRow, campaign_id)
        return _campaign_from_row(row) if row is not None else None

    def save_campaign(self, campaign: Campaign) -> None:
        row = self.session.get(CampaignRow, campaign.campaign_id)
        now = _utcnow()
        if row is None:
            row = CampaignRow(campaign_id=campaign.campaign_id, created_at=now)
            self.session.add(row)

        row.name = campaign.name
        row.campaign_type = campaign.campaign_type
        row.first_seen = _to_db(campaign.first_seen)
        row.last_seen = _to_db(campaign.last_seen)
        row.event_count = campaign.event_count
        row.unique_ips = campaign.unique_ips
        row.attack_types = list(campaign.attack_types)
        row.mitre_techniques = list(campaign.mitre_techniques)
        row.regions = list(campaign.regions)
        row.severity = campaign.severity
        row.status = campaign.status
        row.updated_at = now
        self.session.flush()

    def tag_events(self, campaign_id: str, event_ids: Sequence[int]) -> None:
        if not event_ids:
            return
        self.session.execute(
            update(ThreatRow).where(ThreatRow.id.in_(list(event_ids))).values(campaign_id=campaign_id)
        )


class SqlThreatStore(ThreatStore):
    def __init__(self, url: str = "sqlite:///data/threats.db", echo: bool = False):
        self.url = url
        self._ensure_sqlite_dir(url)
        self.engine = create_engine(url, echo=echo, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(self.engine)
        logger.info(f"Threat store ready: {self.engine.url.render_as_string(hide_password=True)}")

    @staticmethod
    def _ensure_sqlite_dir(url: str) -> None:
        prefix = "sqlite:///"
        if not url.startswith(prefix) or url == prefix + ":memory:":
            return
        db_dir = os.path.dirname(url[len(prefix):])
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[SqlThreatStoreTransaction]:
        session = self.SessionLocal()
        try:
            yield SqlThreatStoreTransaction(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert_enriched_threat(self, event: EnrichedThreatEvent) -> Optional[int]:
        row = ThreatRow(
            source_type=event.source_type,
            attack_source_ip=event.attack_source_ip,
            attack_type=event.attack_type,
            mitre_techniques=list(event.mitre_techniques or []),
            sigma_rule_matched=event.sigma_rule_matched,
            timestamp=_to_db(event.timestamp),
            industry=event.industry,
            region=event.region,
            confidence=event.confidence,
            severity=event.severity,
            service_type=event.service_type,
            skill_level=event.skill_level,
            intent=event.intent,
            tools=list(event.tools) if event.tools is not None else None,
            event_hash=event.event_hash,
            received_at=_to_db(event.received_at) or _utcnow(),
            campaign_id=event.campaign_id,
        )
        db = self.SessionLocal()
        try:
            db.add(row)
            db.commit()
            return row.id
        except IntegrityError:
            db.rollback()
            logger.debug(f"Duplicate threat event ignored (hash {event.event_hash})")
            return None
        finally:
            db.close()

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self.SessionLocal() as db:
            row = db.get(CampaignRow, campaign_id)
            return _campaign_from_row(row) if row is not None else None

    def list_campaigns(self, page: int, limit: int, status: Optional[str] = None) -> CampaignPage:
        with self.SessionLocal() as db:
            count_stmt = select(func.count()).select_from(CampaignRow)
            stmt = select(CampaignRow)
            if status:
                count_stmt = count_stmt.where(CampaignRow.status == status)
                stmt = stmt.where(CampaignRow.status == status)

            total = db.scalar(count_stmt) or 0
            stmt = (
                stmt.order_by(CampaignRow.last_seen.desc(), CampaignRow.campaign_id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = tuple(_campaign_from_row(row) for row in db.scalars(stmt))
        return CampaignPage(items=items, total=total, page=page, limit=limit)

    def get_campaign_events(self, campaign_id: str) -> List[EnrichedThreatEvent]:
        with self.SessionLocal() as db:
            stmt = (
                select(ThreatRow)
                .where(ThreatRow.campaign_id == campaign_id)
                .order_by(ThreatRow.timestamp.asc(), ThreatRow.id.asc())
            )
            return [_threat_from_row(row) for row in db.scalars(stmt)]

    def campaign_stats(self, top_n: int = 10) -> CampaignStats:
        with self.SessionLocal() as db:
            total = db.scalar(select(func.count()).select_from(CampaignRow)) or 0
            active = db.scalar(
                select(func.count()).select_from(CampaignRow).where(CampaignRow.status == "active")
            ) or 0
            correlated = db.scalar(
                select(func.count()).select_from(ThreatRow).where(ThreatRow.campaign_id.is_not(None))
            ) or 0

            count_col = func.count().label("count")
            top_stmt = (
                select(ThreatRow.attack_type, count_col)
                .where(ThreatRow.campaign_id.is_not(None))
                .group_by(ThreatRow.attack_type)
                .order_by(count_col.desc(), ThreatRow.attack_type.asc())
                .limit(top_n)
            )
            top = tuple((attack_type, count) for attack_type, count in db.execute(top_stmt))

        return CampaignStats(
            total_campaigns=total,
            active_campaigns=active,
            total_correlated_events=correlated,
            top_attack_types=top,
        )
