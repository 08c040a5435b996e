"""
Main Service Orchestrator

Entry point for the ledger mirror service.
Wires the ledger, store, indexer, scanner and read API, and manages the
service lifecycle.
"""

import argparse
import asyncio
import json
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict

import boto3

from . import __version__
from .logging_config import init_logging, get_logger, log_performance_metrics
from .config import MirrorConfig, init_config
from .database import init_database, init_redis, DatabaseManager, RedisManager
from .ledger import Ledger, Web3Ledger
from .indexer import EventIndexer
from .reconciler import PositionReconciler
from .liquidation_scanner import LiquidationScanner, CandidateIndex
from .queries import PositionQueries
from .metrics_server import MetricsServer
from .estimator import AccrualModel, RealTimeEstimator, ledger_interest_snapshot, ledger_reward_snapshot
from .types import EventType, LedgerMirrorError, PersistenceFailure, ConfigurationError


class LedgerMirror:
    """
    Service orchestrator.

    Responsibilities:
    - Initialize store, cache and ledger connections
    - Run the indexer, market sync and API server
    - Export monitoring metrics
    - Shut down without committing partial work
    """

    def __init__(self, config: MirrorConfig, ledger: Optional[Ledger] = None):
        self.logger = get_logger("ledger_mirror")
        self.config = config
        self.ledger = ledger

        self.db_manager: Optional[DatabaseManager] = None
        self.redis_manager: Optional[RedisManager] = None
        self.indexer: Optional[EventIndexer] = None
        self.scanner: Optional[LiquidationScanner] = None
        self.queries: Optional[PositionQueries] = None
        self.metrics_server: Optional[MetricsServer] = None

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._start_time = time.time()
        self._cloudwatch = None

    def initialize(self):
        """Initialize configuration-dependent components"""
        try:
            self.logger.info(
                "Initializing ledger mirror...",
                extra={"network": self.config.network_name, "chain_id": self.config.chain_id}
            )

            self.db_manager = init_database(self.config.database)
            self.redis_manager = init_redis(self.config.redis)

            if not self.db_manager.health_check():
                raise PersistenceFailure("Database health check failed")

            self.logger.info(
                "Store connections established",
                extra={"redis": "fallback" if self.redis_manager.using_fallback else "connected"}
            )

            if self.ledger is None:
                self.ledger = Web3Ledger(self.config)

            candidate_index = (
                CandidateIndex(self.config.indexer.start_block)
                if self.config.scanner.incremental_index else None
            )

            self.indexer = EventIndexer(
                self.config, self.ledger, self.db_manager, self.redis_manager, candidate_index
            )
            self.scanner = LiquidationScanner(
                self.ledger,
                self.config.risk,
                self.config.scanner,
                self.config.retry,
                start_block=self.config.indexer.start_block,
                candidate_index=candidate_index
            )
            self.queries = PositionQueries(
                self.config,
                self.db_manager,
                self.redis_manager,
                self.scanner,
                PositionReconciler(self.ledger, self.config.risk, self.config.retry)
            )
            self.metrics_server = MetricsServer(
                port=self.config.monitoring.api_port,
                queries=self.queries,
                health_check=self.health
            )

            self.logger.info("All components initialized")

        except Exception as e:
            self.logger.critical(f"Initialization failed: {e}", exc_info=True)
            raise

    def health(self) -> Dict[str, bool]:
        return {
            "database": self.db_manager.health_check(),
            "redis": not self.redis_manager.using_fallback,
        }

    async def start(self):
        """Start the service and wait for shutdown"""
        try:
            self._running = True

            await self.metrics_server.start()
            MetricsServer.set_service_info(
                network=self.config.network_name,
                chain_id=self.config.chain_id,
                version=__version__
            )
            MetricsServer.set_start_time(self._start_time)

            self._tasks.append(asyncio.create_task(self.indexer.run()))
            if self.config.contracts.default_market:
                self._tasks.append(asyncio.create_task(
                    self.indexer.market_sync_loop([self.config.contracts.default_market])
                ))
            self._tasks.append(asyncio.create_task(self.monitoring_loop()))

            self.logger.info("Ledger mirror started")

            await self._shutdown_event.wait()

        except Exception as e:
            self.logger.critical(f"Service startup failed: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop the service gracefully"""
        self.logger.info("Stopping ledger mirror...")
        self._running = False

        if self.indexer:
            await self.indexer.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.metrics_server:
            await self.metrics_server.stop()

        self._shutdown_event.set()
        self.logger.info("Ledger mirror stopped")

    async def monitoring_loop(self):
        """Log and export pipeline metrics periodically"""
        self.logger.info("Starting monitoring loop...")

        while self._running:
            try:
                await asyncio.sleep(self.config.monitoring.metrics_export_interval_seconds)

                stats = dict(self.indexer.stats)
                stats["pending"] = self.indexer.gate.pending
                stats["uptime_seconds"] = int(time.time() - self._start_time)
                log_performance_metrics(self.logger, stats)

                if self.redis_manager.using_fallback:
                    self.redis_manager.reconnect()

                if self.config.monitoring.cloudwatch_enabled:
                    await self._export_to_cloudwatch(stats)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in monitoring loop: {e}", exc_info=True)

        self.logger.info("Monitoring loop stopped")

    async def _export_to_cloudwatch(self, stats: Dict[str, int]):
        """Export counters to CloudWatch metrics"""
        if self._cloudwatch is None:
            self._cloudwatch = boto3.client('cloudwatch', region_name=self.config.monitoring.cloudwatch_region)

        now = datetime.utcnow()
        metric_data = [
            {"MetricName": name, "Timestamp": now, "Value": float(value), "Unit": "Count"}
            for name, value in stats.items() if name != "uptime_seconds"
        ]
        try:
            await asyncio.to_thread(
                self._cloudwatch.put_metric_data,
                Namespace=self.config.monitoring.cloudwatch_namespace,
                MetricData=metric_data
            )
        except Exception as e:
            self.logger.error(f"CloudWatch export failed: {e}")


# ============================================================================
# CLI
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ledger-mirror',
        description='Lending ledger event indexer and liquidation risk scanner'
    )
    parser.add_argument('--config', type=Path, default=None, help='Path to config.yaml')
    parser.add_argument('--scan', metavar='MARKET', help='Print liquidation candidates for a market and exit')
    parser.add_argument('--requester', metavar='ADDR', help='Address excluded from scan results')
    parser.add_argument('--backfill-from', metavar='N', type=int, help='Backfill events from block N and exit')
    parser.add_argument('--estimate-debt', metavar='USER', help='Print live debt estimates for a user in the default market')
    parser.add_argument('--estimate-reward', metavar='USER', help='Print live staking reward estimates for a user')
    parser.add_argument('--ticks', type=int, default=5, help='Number of estimates printed by --estimate-debt or --estimate-reward')
    parser.add_argument(
        '--gas-comparison',
        nargs=3,
        metavar=('TYPE', 'CHAIN_A', 'CHAIN_B'),
        help='Compare average gas cost of an event type between two chains and exit'
    )
    return parser


async def run_command(mirror: LedgerMirror, args: argparse.Namespace) -> int:
    """One-shot CLI modes; returns the process exit code"""
    if args.scan:
        candidates = await mirror.queries.get_liquidation_candidates(args.scan, args.requester)
        print(json.dumps([c.to_dict() for c in candidates], indent=2))
        return 0

    if args.backfill_from is not None:
        outcomes = await mirror.indexer.backfill(args.backfill_from)
        print(json.dumps({"outcomes": outcomes, "stats": mirror.indexer.stats}, indent=2))
        return 0

    if args.estimate_debt:
        return await estimate_debt(mirror, args.estimate_debt, args.ticks)

    if args.estimate_reward:
        return await estimate_reward(mirror, args.estimate_reward, args.ticks)

    event_type, chain_a, chain_b = args.gas_comparison
    comparison = mirror.queries.get_gas_comparison(EventType(event_type.upper()), int(chain_a), int(chain_b))
    print(json.dumps(comparison.to_dict(), indent=2))
    return 0


async def estimate_debt(mirror: LedgerMirror, user: str, ticks: int) -> int:
    """Anchor a debt estimate at the ledger value and print it as it ticks"""
    market = mirror.config.contracts.default_market
    if market is None:
        raise ConfigurationError("contracts.default_market is required to estimate debt")

    model = AccrualModel.from_config(mirror.config.estimator)
    return await _print_estimates(
        mirror,
        f"{user} debt in {market}",
        f"{mirror.config.chain_id}:{user.lower()}",
        lambda: ledger_interest_snapshot(mirror.ledger, user, market, model),
        ticks
    )


async def estimate_reward(mirror: LedgerMirror, user: str, ticks: int) -> int:
    """Anchor a staking reward estimate at the pool's pending reward"""
    if mirror.config.contracts.staking_pool is None:
        raise ConfigurationError("contracts.staking_pool is required to estimate rewards")

    model = AccrualModel.from_config(mirror.config.estimator)
    return await _print_estimates(
        mirror,
        f"{user} pending reward",
        f"{mirror.config.chain_id}:{user.lower()}:reward",
        lambda: ledger_reward_snapshot(mirror.ledger, user, model, mirror.config.estimator.reward_rate_bps),
        ticks
    )


async def _print_estimates(mirror: LedgerMirror, label: str, context: str, fetch, ticks: int) -> int:
    estimator = RealTimeEstimator.from_config(
        mirror.config.estimator,
        on_tick=lambda value: print(f"{label}: ~{value:.0f}")
    )

    await estimator.switch_context(context, fetch)
    print(f"{label}: {estimator.value:.0f} (ledger)")

    await asyncio.sleep(ticks * estimator.tick_interval_seconds)
    await estimator.stop()
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the ledger mirror.

    Loads configuration and logging, then runs the service or a one-shot
    command.
    """
    args = build_parser().parse_args(argv)

    # Load configuration first (before logging)
    config = init_config(args.config)

    init_logging(
        log_dir=Path(config.monitoring.log_dir),
        log_level=config.monitoring.log_level,
        enable_cloudwatch=config.monitoring.cloudwatch_enabled,
        cloudwatch_region=config.monitoring.cloudwatch_region,
        cloudwatch_log_group=config.monitoring.cloudwatch_namespace,
    )

    logger = get_logger("main")
    logger.info(
        "ledger_mirror_starting",
        extra={"network": config.network_name, "chain_id": config.chain_id, "version": __version__}
    )

    mirror = LedgerMirror(config)

    try:
        mirror.initialize()

        if args.scan or args.backfill_from is not None or args.gas_comparison or args.estimate_debt or args.estimate_reward:
            return await run_command(mirror, args)

        # Setup signal handlers for graceful shutdown
        def signal_handler(sig):
            logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
            asyncio.ensure_future(mirror.stop())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        await mirror.start()

    except LedgerMirrorError as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await mirror.stop()
        return 1

    logger.info("Ledger mirror shutdown complete")
    return 0


def run():
    """Console script entry point"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
