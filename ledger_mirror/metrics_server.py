"""
HTTP API and Prometheus Metrics Server

Exposes pipeline metrics for Prometheus scraping alongside the derived
read API (positions, liquidation candidates, gas comparison).
"""

from typing import Optional, Callable, Dict, Any
from aiohttp import web
from prometheus_client import (
    Counter, Gauge, Histogram, Info,
    generate_latest, CONTENT_TYPE_LATEST
)

from .types import (
    EventType, DataUnavailable, InvariantViolation, TransientLedgerError,
    LedgerMirrorError
)
from .logging_config import get_logger


# Define Prometheus metrics
# Gate admissions
events_admitted_counter = Counter(
    'ledger_mirror_events_admitted_total',
    'Notifications admitted for processing'
)

events_duplicate_counter = Counter(
    'ledger_mirror_events_duplicate_total',
    'Notifications suppressed as duplicates'
)

events_stale_counter = Counter(
    'ledger_mirror_events_stale_total',
    'Notifications at or below the stream watermark'
)

# Writes
events_committed_counter = Counter(
    'ledger_mirror_events_committed_total',
    'Units of work committed to the store',
    ['event_type']
)

events_failed_counter = Counter(
    'ledger_mirror_events_failed_total',
    'Units of work that failed and were released',
    ['category']
)

positions_written_counter = Counter(
    'ledger_mirror_positions_written_total',
    'Position rows upserted'
)

# Watermarks
watermark_gauge = Gauge(
    'ledger_mirror_watermark_block',
    'Last committed block per stream',
    ['stream']
)

# Scanner
scan_duration_histogram = Histogram(
    'ledger_mirror_scan_duration_seconds',
    'Liquidation scan duration'
)

candidates_gauge = Gauge(
    'ledger_mirror_liquidation_candidates',
    'Candidates returned by the last scan'
)

# Reconciler
fallbacks_counter = Counter(
    'ledger_mirror_reconcile_fallbacks_total',
    'Reconciled fields that used a fallback value',
    ['field']
)

# Service info
service_info = Info(
    'ledger_mirror',
    'Information about the ledger mirror service'
)

start_time_gauge = Gauge(
    'ledger_mirror_start_time_seconds',
    'Unix timestamp when the service started'
)


class MetricsServer:
    """
    HTTP server for Prometheus metrics and the derived read API.

    Read routes are served only when a queries object is attached.
    """

    def __init__(
        self,
        port: int = 8000,
        queries=None,
        health_check: Optional[Callable[[], Dict[str, bool]]] = None
    ):
        self.port = port
        self.queries = queries
        self.health_check = health_check
        self.logger = get_logger("metrics_server")
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._running = False

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/metrics', self.handle_metrics)
        app.router.add_get('/health', self.handle_health)
        app.router.add_get('/positions/{market}/{user}', self.handle_position)
        app.router.add_get('/liquidations/{market}', self.handle_liquidations)
        app.router.add_get('/gas-comparison/{event_type}', self.handle_gas_comparison)
        return app

    async def start(self):
        """Start the HTTP server"""
        try:
            self.logger.info(f"Starting API server on port {self.port}...")

            self.app = self.build_app()

            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, '0.0.0.0', self.port)
            await self.site.start()

            self._running = True
            self.logger.info(f"API server started on http://0.0.0.0:{self.port}")

        except Exception as e:
            self.logger.error(f"Failed to start API server: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop the HTTP server"""
        try:
            self.logger.info("Stopping API server...")
            self._running = False

            if self.site:
                await self.site.stop()

            if self.runner:
                await self.runner.cleanup()

            self.logger.info("API server stopped")

        except Exception as e:
            self.logger.error(f"Error stopping API server: {e}", exc_info=True)

    # ========================================================================
    # Handlers
    # ========================================================================

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """Handle /metrics endpoint - return Prometheus metrics"""
        try:
            metrics_output = generate_latest()

            return web.Response(
                body=metrics_output,
                headers={'Content-Type': CONTENT_TYPE_LATEST}
            )

        except Exception as e:
            self.logger.error(f"Error generating metrics: {e}", exc_info=True)
            return web.Response(
                text=f"Error generating metrics: {e}",
                status=500
            )

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle /health endpoint - component health"""
        components = self.health_check() if self.health_check else {}
        healthy = all(components.values())
        return web.json_response(
            {'status': 'ok' if healthy else 'degraded', 'components': components},
            status=200 if healthy else 503
        )

    async def handle_position(self, request: web.Request) -> web.Response:
        market = request.match_info['market']
        user = request.match_info['user']
        return await self._respond(lambda: self._position(user, market))

    async def _position(self, user: str, market: str) -> Dict[str, Any]:
        position = self.queries.get_position(user, market)
        if position is None:
            raise DataUnavailable(f"No position for {user} in {market}")
        return position.to_dict()

    async def handle_liquidations(self, request: web.Request) -> web.Response:
        market = request.match_info['market']
        requester = request.query.get('requester')

        async def _scan():
            candidates = await self.queries.get_liquidation_candidates(market, requester)
            return {'market': market.lower(), 'candidates': [c.to_dict() for c in candidates]}

        return await self._respond(_scan)

    async def handle_gas_comparison(self, request: web.Request) -> web.Response:
        async def _compare():
            try:
                event_type = EventType(request.match_info['event_type'].upper())
                chain_a = int(request.query['chain_a'])
                chain_b = int(request.query['chain_b'])
            except (KeyError, ValueError) as e:
                raise web.HTTPBadRequest(text=f"Invalid gas comparison request: {e}")
            return self.queries.get_gas_comparison(event_type, chain_a, chain_b).to_dict()

        return await self._respond(_compare)

    async def _respond(self, produce) -> web.Response:
        """Run a read and map domain errors to HTTP status codes"""
        if self.queries is None:
            return web.json_response({'error': 'Read API not configured'}, status=503)

        try:
            return web.json_response(await produce())
        except DataUnavailable as e:
            return web.json_response({'error': str(e)}, status=404)
        except InvariantViolation as e:
            return web.json_response(
                {'error': e.category.value, 'reason': e.reason.value},
                status=422
            )
        except TransientLedgerError as e:
            self.logger.warning(f"Ledger unavailable: {e}")
            return web.json_response({'error': 'Ledger temporarily unavailable'}, status=503)
        except LedgerMirrorError as e:
            self.logger.error(f"Read failed: {e}", exc_info=True)
            return web.json_response({'error': 'Internal error'}, status=500)

    # ========================================================================
    # Metric updates
    # ========================================================================

    @staticmethod
    def record_admission(result: str):
        """Count a gate admission outcome (ADMIT, DUPLICATE, STALE)"""
        if result == "ADMIT":
            events_admitted_counter.inc()
        elif result == "DUPLICATE":
            events_duplicate_counter.inc()
        elif result == "STALE":
            events_stale_counter.inc()

    @staticmethod
    def record_commit(event_type: str, positions: int):
        events_committed_counter.labels(event_type=event_type).inc()
        positions_written_counter.inc(positions)

    @staticmethod
    def record_failure(category: str):
        events_failed_counter.labels(category=category).inc()

    @staticmethod
    def update_watermark(stream: str, block_number: int):
        watermark_gauge.labels(stream=stream).set(block_number)

    @staticmethod
    def record_scan(duration_seconds: float, candidates: int):
        scan_duration_histogram.observe(duration_seconds)
        candidates_gauge.set(candidates)

    @staticmethod
    def record_fallback(field: str):
        fallbacks_counter.labels(field=field).inc()

    @staticmethod
    def set_service_info(network: str, chain_id: int, version: str):
        """Set service information"""
        service_info.info({
            'network': network,
            'chain_id': str(chain_id),
            'version': version
        })

    @staticmethod
    def set_start_time(timestamp: float):
        """Set service start time"""
        start_time_gauge.set(timestamp)
