import sys
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from sqlalchemy.exc import SQLAlchemyError

from correlation.clustering import generate_campaign_id
from correlation.correlation_engine import CorrelationEngine, ScanInProgressError
from correlation.models import Campaign, CorrelationConfig, EnrichedThreatEvent
from storage.sql_store import SqlThreatStore, SqlThreatStoreTransaction

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class CorrelationTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqlThreatStore(f"sqlite:///{os.path.join(self.tmp.name, 'threats.db')}")
        self.config = CorrelationConfig(min_events_for_campaign=3, min_ips_for_pattern_campaign=3)
        self.engine = CorrelationEngine(self.store, self.config, clock=lambda: NOW)
        self._hash = 0

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def add(self, ip, minutes_ago=30, attack_type="ssh_bruteforce", techniques=("T1110",), severity="medium",
            received_hours_ago=1, region="EU"):
        self._hash += 1
        event = EnrichedThreatEvent(
            source_type="guard",
            attack_source_ip=ip,
            attack_type=attack_type,
            mitre_techniques=list(techniques),
            timestamp=NOW - timedelta(minutes=minutes_ago),
            region=region,
            severity=severity,
            event_hash=f"hash-{self._hash}",
            received_at=NOW - timedelta(hours=received_hours_ago),
        )
        event_id = self.store.insert_enriched_threat(event)
        self.assertIsNotNone(event_id)
        return event_id


class TestScanForCampaigns(CorrelationTestCase):
    def test_ip_campaign_and_idempotent_rescan(self):
        ids = [self.add("10.0.0.1", minutes_ago=m) for m in (50, 40, 30)]

        result = self.engine.scan_for_campaigns()
        self.assertEqual(result.new_campaigns, 1)
        self.assertEqual(result.updated_campaigns, 0)
        self.assertEqual(result.events_correlated, 3)
        self.assertGreaterEqual(result.duration, 0)

        campaign_id = generate_campaign_id(ids, NOW.date())
        campaign = self.engine.get_campaign(campaign_id)
        self.assertIsNotNone(campaign)
        self.assertEqual(campaign.campaign_type, "ip_cluster")
        self.assertEqual(campaign.event_count, 3)
        self.assertEqual(campaign.first_seen, NOW - timedelta(minutes=50))
        self.assertEqual(campaign.last_seen, NOW - timedelta(minutes=30))

        events = self.engine.get_campaign_events(campaign_id)
        self.assertEqual([e.id for e in events], ids)
        self.assertTrue(all(e.campaign_id == campaign_id for e in events))

        second = self.engine.scan_for_campaigns()
        self.assertEqual(second.new_campaigns, 0)
        self.assertEqual(second.events_correlated, 0)
        self.assertEqual([e.campaign_id for e in self.engine.get_campaign_events(campaign_id)], [campaign_id] * 3)

    def test_threshold(self):
        self.add("10.0.0.1", minutes_ago=50)
        self.add("10.0.0.1", minutes_ago=40)
        self.assertEqual(self.engine.scan_for_campaigns().new_campaigns, 0)

        self.add("10.0.0.1", minutes_ago=30)
        self.assertEqual(self.engine.scan_for_campaigns().new_campaigns, 1)

    def test_pattern_campaign_uses_unassigned_events(self):
        # Three events from one IP form an IP campaign and are not reused.
        for m in (50, 40, 30):
            self.add("10.0.0.1", minutes_ago=m, attack_type="sqli", techniques=("T1190",))
        for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3"):
            self.add(ip, attack_type="sqli", techniques=("T1190",), severity="critical")

        result = self.engine.scan_for_campaigns()
        self.assertEqual(result.new_campaigns, 2)
        self.assertEqual(result.events_correlated, 6)

        page = self.engine.list_campaigns()
        by_type = {c.campaign_type: c for c in page.items}
        self.assertEqual(by_type["pattern_cluster"].name, "Pattern: sqli from 3 IPs")
        self.assertEqual(by_type["pattern_cluster"].unique_ips, 3)
        self.assertEqual(by_type["pattern_cluster"].severity, "critical")
        self.assertEqual(by_type["ip_cluster"].severity, "medium")

    def test_pattern_needs_distinct_ips(self):
        self.add("1.1.1.1")
        self.add("1.1.1.1", minutes_ago=200)
        self.add("2.2.2.2")
        self.add("2.2.2.2", minutes_ago=200)
        self.assertEqual(self.engine.scan_for_campaigns().new_campaigns, 0)

    def test_scan_window(self):
        for m in (50, 40, 30):
            self.add("10.0.0.1", minutes_ago=m, received_hours_ago=30)
        self.assertEqual(self.engine.scan_for_campaigns().events_correlated, 0)

    def test_existing_campaign_is_merged(self):
        ids = [self.add("10.0.0.1", minutes_ago=m, severity="low") for m in (50, 40, 30)]
        campaign_id = generate_campaign_id(ids, NOW.date())
        with self.store.transaction() as tx:
            tx.save_campaign(Campaign(
                campaign_id=campaign_id, name="Known", campaign_type="manual",
                first_seen=NOW - timedelta(hours=5), last_seen=NOW - timedelta(hours=4),
                event_count=10, unique_ips=1, attack_types=["recon"], severity="critical", status="resolved",
            ))

        result = self.engine.scan_for_campaigns()
        self.assertEqual(result.new_campaigns, 0)
        self.assertEqual(result.updated_campaigns, 1)

        merged = self.engine.get_campaign(campaign_id)
        self.assertEqual(merged.name, "Known")
        self.assertEqual(merged.status, "resolved")
        self.assertEqual(merged.severity, "critical")
        self.assertEqual(merged.event_count, 10)
        self.assertEqual(merged.first_seen, NOW - timedelta(hours=5))
        self.assertEqual(merged.last_seen, NOW - timedelta(minutes=30))
        self.assertEqual(merged.attack_types, ["recon", "ssh_bruteforce"])

    def test_failure_rolls_back_everything(self):
        for m in (50, 40, 30):
            self.add("10.0.0.1", minutes_ago=m)

        with mock.patch.object(SqlThreatStoreTransaction, "tag_events", side_effect=SQLAlchemyError("boom")):
            with self.assertRaises(SQLAlchemyError):
                self.engine.scan_for_campaigns()

        self.assertEqual(self.engine.list_campaigns().total, 0)
        self.assertEqual(self.engine.get_campaign_stats().total_correlated_events, 0)

        # The next scan retries from scratch.
        self.assertEqual(self.engine.scan_for_campaigns().new_campaigns, 1)

    def test_overlapping_scan_rejected(self):
        self.engine._scan_lock.acquire()
        try:
            with self.assertRaises(ScanInProgressError):
                self.engine.scan_for_campaigns()
        finally:
            self.engine._scan_lock.release()
        self.engine.scan_for_campaigns()


class TestStoreAndReadApi(CorrelationTestCase):
    def _campaign(self, suffix, hours_ago, status="active"):
        return Campaign(
            campaign_id=f"C-20240501-{suffix}", name=f"c-{suffix}", campaign_type="ip_cluster",
            first_seen=NOW - timedelta(hours=hours_ago + 1), last_seen=NOW - timedelta(hours=hours_ago),
            event_count=3, unique_ips=1, status=status,
        )

    def test_duplicate_hash_ignored(self):
        event = EnrichedThreatEvent(
            source_type="trap", attack_source_ip="1.2.3.4", attack_type="scan",
            timestamp=NOW, event_hash="same", tools=["nmap"],
        )
        first = self.store.insert_enriched_threat(event)
        self.assertIsNotNone(first)
        self.assertIsNone(self.store.insert_enriched_threat(event))

    def test_list_campaigns_pagination(self):
        with self.store.transaction() as tx:
            tx.save_campaign(self._campaign("aaaaaaaa", 3))
            tx.save_campaign(self._campaign("bbbbbbbb", 1))
            tx.save_campaign(self._campaign("cccccccc", 2, status="resolved"))

        first = self.engine.list_campaigns(page=1, limit=2)
        self.assertEqual([c.campaign_id for c in first.items], ["C-20240501-bbbbbbbb", "C-20240501-cccccccc"])
        self.assertEqual(first.total, 3)
        self.assertTrue(first.has_more)

        second = self.engine.list_campaigns(page=2, limit=2)
        self.assertEqual([c.campaign_id for c in second.items], ["C-20240501-aaaaaaaa"])
        self.assertFalse(second.has_more)

        resolved = self.engine.list_campaigns(status="resolved")
        self.assertEqual(resolved.total, 1)

        clamped = self.engine.list_campaigns(page=0, limit=5000)
        self.assertEqual(clamped.limit, 1000)
        self.assertEqual(clamped.page, 1)

        with self.assertRaises(ValueError):
            self.engine.list_campaigns(status="closed")

    def test_campaign_stats(self):
        for m in (50, 40, 30):
            self.add("10.0.0.1", minutes_ago=m)
        for m in (20, 15, 10):
            self.add("10.0.0.2", minutes_ago=m, attack_type="port_scan")
        self.add("10.0.0.3")
        self.engine.scan_for_campaigns()

        stats = self.engine.get_campaign_stats()
        self.assertEqual(stats.total_campaigns, 2)
        self.assertEqual(stats.active_campaigns, 2)
        self.assertEqual(stats.total_correlated_events, 6)
        self.assertEqual(stats.top_attack_types, (("port_scan", 3), ("ssh_bruteforce", 3)))
        self.assertEqual(stats.as_dict()["top_attack_types"][0], {"type": "port_scan", "count": 3})

    def test_missing_campaign(self):
        self.assertIsNone(self.engine.get_campaign("C-00000000-deadbeef"))
        self.assertEqual(self.engine.get_campaign_events("C-00000000-deadbeef"), [])


if __name__ == '__main__':
    unittest.main()
