"""
Network Monitor Service - wiring and main loop.

Builds the store, event sinks, SNMP sessions, scanner and scheduler from
one MonitorConfig, keeps polling registered devices, and logs statistics
periodically until stopped.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Iterable, Optional

from ._types import ScanJob, ScanSummary
from .anomaly import AnomalyDetector
from .collector import MetricsCollector
from .config import MonitorConfig, detect_bridge_networks
from .events import (
    CompositeEventSink,
    EventSink,
    LoggingEventSink,
    WebhookEventSink,
)
from .exceptions import ScanRefused
from .policy import ContainerNetworkPolicy
from .probe import HostProbe
from .profiles import DeviceProfileManager
from .scanner import DiscoveryScanner
from .scheduler import PollingScheduler
from .snmp.session import SessionRegistry
from .store import DeviceStore, InMemoryDeviceStore, SqliteDeviceStore

logger = logging.getLogger(__name__)


class NetworkMonitorService:
    """
    Main network monitor service.

    Discovered devices are registered with the polling scheduler as soon
    as the scanner records them.
    """

    def __init__(
        self,
        config: MonitorConfig,
        store: Optional[DeviceStore] = None,
        events: Optional[EventSink] = None,
        poll: bool = True,
    ):
        self.config = config
        self.poll = poll
        self._running = False
        self._shutdown_event = asyncio.Event()

        if store is None:
            store = SqliteDeviceStore(config.db_path) if config.db_path else InMemoryDeviceStore()
        self.store = store

        self._webhook: Optional[WebhookEventSink] = None
        if events is None:
            sinks: list[EventSink] = [LoggingEventSink()]
            if config.webhook_url:
                self._webhook = WebhookEventSink(config.webhook_url)
                sinks.append(self._webhook)
            events = CompositeEventSink(sinks) if len(sinks) > 1 else sinks[0]
        self.events = events

        bridge_networks = detect_bridge_networks() if config.block_bridge_networks else []
        self.policy = ContainerNetworkPolicy(config.blocked_networks, bridge_networks)

        self.sessions = SessionRegistry(
            timeout=config.snmp_timeout,
            retries=config.snmp_retries,
            walk_timeout=config.snmp_walk_timeout,
        )
        self.scheduler = PollingScheduler(
            collector=MetricsCollector(self.sessions),
            profiles=DeviceProfileManager(config.tier_intervals),
            store=self.store,
            events=self.events,
            detector=AnomalyDetector(config.anomaly_window, config.anomaly_deviation),
            history_size=config.history_size,
        )
        self.scanner = DiscoveryScanner(
            store=self.store,
            events=self.events,
            config=config,
            probe=HostProbe(config),
            policy=self.policy,
            on_new_device=self.scheduler.register if poll else None,
        )

    async def start(self, initial_scan: Optional[str] = None) -> None:
        """Start polling stored devices, optionally scan, then run until stopped."""
        logger.info("Starting Network Monitor Service")
        self._running = True

        if self.poll:
            await self.scheduler.start()

        if initial_scan is not None:
            self.trigger_scan(initial_scan)

        await self._main_loop()

    async def stop(self) -> None:
        """Stop scanning and polling and release resources."""
        if not self._running:
            return
        logger.info("Stopping Network Monitor Service")
        self._running = False
        self._shutdown_event.set()

        self.scanner.stop()
        await self.scanner.wait()
        await self.scheduler.stop()

        if self._webhook is not None:
            await self._webhook.close()

    def trigger_scan(
        self,
        target: Optional[str] = None,
        methods: Optional[Iterable[str]] = None,
    ) -> Optional[ScanJob]:
        """Start a background scan; refusals are logged and return None."""
        try:
            return self.scanner.start(target, methods)
        except ScanRefused as e:
            logger.warning(f"Scan refused: {e} (retryable={e.retryable})")
            return None

    async def scan_once(
        self,
        target: Optional[str] = None,
        methods: Optional[Iterable[str]] = None,
    ) -> ScanSummary:
        """Run one scan to completion without the main loop."""
        self._running = True
        try:
            return await self.scanner.run(target, methods)
        finally:
            await self.stop()

    async def _main_loop(self) -> None:
        logger.info("Monitor main loop started")

        while self._running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.stats_interval,
                )
                break
            except asyncio.TimeoutError:
                pass

            stats = self.statistics()
            logger.info(
                f"Monitoring {stats['polling']['devices_monitored']} devices, "
                f"{stats['polling']['successful_polls']} ok / {stats['polling']['failed_polls']} failed polls, "
                f"score {stats['polling']['performance_score']}"
            )

        logger.info("Monitor main loop stopped")

    def statistics(self) -> dict[str, Any]:
        return {
            "polling": self.scheduler.statistics(),
            "scanner": self.scanner.status(),
        }


def main():
    """Entry point for the network-monitor service."""
    import argparse

    parser = argparse.ArgumentParser(description="Network discovery and SNMP polling service")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--log-level", type=str, default=None, help="Log level")
    parser.add_argument("--scan", type=str, metavar="RANGE", help="Scan RANGE (CIDR or 'auto') on startup")
    parser.add_argument("--no-poll", action="store_true", help="Discovery only: run the scan and exit")
    args = parser.parse_args()

    # Load configuration
    if args.config:
        config = MonitorConfig.from_yaml(Path(args.config))
    else:
        config = MonitorConfig.from_env()

    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Load credentials from separate file
    config.load_credentials()

    for error in config.validation_errors():
        logger.warning(f"Config: {error}")

    if args.no_poll and not args.scan and not config.network_ranges:
        logger.error("--no-poll needs --scan RANGE or configured network ranges")
        sys.exit(2)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = NetworkMonitorService(config, poll=not args.no_poll)

    def signal_handler():
        logger.info("Received shutdown signal")
        if args.no_poll:
            service.scanner.stop()
        else:
            loop.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        if args.no_poll:
            summary = loop.run_until_complete(service.scan_once(args.scan))
            logger.info(f"Scan {summary.state.value}: {summary.found} new, {summary.updated} updated")
        else:
            loop.run_until_complete(service.start(initial_scan=args.scan))
    except ScanRefused as e:
        logger.error(f"Scan refused: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
