import os
import sys
import time
import logging
from typing import Any, Dict

from correlation.correlation_engine import CorrelationEngine, ScanInProgressError
from correlation.models import CorrelationConfig
from detection.sigma_engine import SigmaEngine
from storage.sql_store import SqlThreatStore
from utils.config import load_config, setup_logging


logger = logging.getLogger(__name__)


def validate_rules(sigma_config: Dict[str, Any]) -> SigmaEngine:
    """
    Startup check of the configured Sigma rule set. Live matching happens in
    the callers that feed events to SigmaEngine.match; this loop only runs
    correlation scans, so the engine is built here to report broken rules early.
    """
    engine = SigmaEngine(sigma_config)
    logger.info(
        f"Sigma rule validation: {len(engine.bound_rules)} valid, "
        f"{engine.rules_skipped} filtered out, {len(engine.load_errors)} invalid"
    )
    for error in engine.load_errors:
        logger.warning(f"Invalid Sigma rule: {error}")
    return engine


def main():
    config_path = os.environ.get('CONFIG_PATH', 'config/config.yaml')

    if not os.path.exists(config_path):
        print(f"Error: Config file not found at {config_path}")
        sys.exit(1)

    config = load_config(config_path)

    setup_logging(config)

    logger.info("=" * 60)
    logger.info("Starting Threat Detection & Correlation Service")
    logger.info("=" * 60)

    correlation_config = config.get('correlation', {}) or {}
    db_config = config.get('database', {}) or {}

    try:
        engine = validate_rules(config.get('sigma', {}) or {})
        store = SqlThreatStore(
            db_config.get('url') or 'sqlite:///data/threats.db',
            echo=bool(db_config.get('echo', False)),
        )
        correlator = CorrelationEngine(store, CorrelationConfig.from_dict(correlation_config))

        logger.info("All components initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing components: {e}", exc_info=True)
        sys.exit(1)

    scan_interval = correlation_config.get('scan_interval', 300)
    stats_interval = config.get('stats_interval', 60)
    logger.info(f"Scan interval: {scan_interval}s")

    # Scan immediately on start, then on schedule.
    last_scan_time = 0.0
    last_stats_time = time.time()

    logger.info("Entering correlation loop")

    while True:
        try:
            current_time = time.time()

            if current_time - last_scan_time >= scan_interval:
                last_scan_time = current_time
                try:
                    result = correlator.scan_for_campaigns()
                    logger.info(f"Scan result: {result.as_dict()}")
                except ScanInProgressError:
                    logger.warning("Previous scan still running, skipping this tick")

            if current_time - last_stats_time >= stats_interval:
                logger.info("=" * 60)
                logger.info("System Statistics:")
                logger.info(f"Campaigns: {correlator.get_campaign_stats().as_dict()}")
                logger.info(f"Sigma rule set (validated at startup): {len(engine.bound_rules)} valid, {len(engine.load_errors)} invalid")
                logger.info("=" * 60)
                last_stats_time = current_time

        except KeyboardInterrupt:
            logger.info("Received shutdown signal")
            break
        except Exception as e:
            # Scan failures roll back; the next tick retries.
            logger.error(f"Error in main loop: {e}", exc_info=True)

        try:
            time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Received shutdown signal")
            break

    store.close()
    logger.info("Threat Detection & Correlation Service stopped")


if __name__ == '__main__':
    main()
