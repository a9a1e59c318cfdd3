"""HTTP entrypoint for the place search and credits API."""

from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import NotFound
from werkzeug.serving import make_server

from scraping_flow.api.auth import require_owner
from scraping_flow.core.config import Settings, get_settings
from scraping_flow.core.credits import CreditLedger
from scraping_flow.core.db import Database
from scraping_flow.core.errors import ScrapingFlowError
from scraping_flow.core.notifications import NotificationSink
from scraping_flow.core.store import ResultStore
from scraping_flow.etl.export import export_filename, rows_to_csv
from scraping_flow.services.scraping_service import SearchOrchestrator
from scraping_flow.vendors.google_places import PlacesClient

logger = logging.getLogger(__name__)

API_PREFIX = "/api/scraping-flow"
DRAIN_TIMEOUT_SECONDS = 60.0


class InFlightRequests:
    """Counts requests currently being served so shutdown can wait for them."""

    def __init__(self) -> None:
        self._count = 0
        self._idle = threading.Condition()

    @property
    def count(self) -> int:
        with self._idle:
            return self._count

    def enter(self) -> None:
        with self._idle:
            self._count += 1

    def leave(self) -> None:
        with self._idle:
            self._count -= 1
            if self._count <= 0:
                self._count = 0
                self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._count == 0, timeout)


@dataclass
class Services:
    """External handles owned by the process, closed together on shutdown."""

    orchestrator: SearchOrchestrator
    results_db: Optional[Database] = None
    credits_db: Optional[Database] = None
    notifications: Optional[NotificationSink] = None
    in_flight: InFlightRequests = field(default_factory=InFlightRequests)


def build_services(settings: Settings) -> Services:
    results_db = Database(settings.database_url, name="results", maxconn=settings.db_pool_max)
    if settings.credits_database_url == settings.database_url:
        credits_db = results_db
    else:
        credits_db = Database(settings.credits_database_url, name="credits", maxconn=settings.db_pool_max)
    notifications = NotificationSink.from_url(settings.redis_url, settings.notify_channel)
    orchestrator = SearchOrchestrator(
        provider=PlacesClient(settings.google_api_key, base_url=settings.google_base_url),
        ledger=CreditLedger(credits_db),
        store=ResultStore(results_db),
        notifications=notifications,
        default_language_code=settings.default_language_code,
    )
    return Services(orchestrator, results_db=results_db, credits_db=credits_db, notifications=notifications)


def shutdown_services(services: Services, drain_timeout: Optional[float] = DRAIN_TIMEOUT_SECONDS) -> None:
    """Wait for in-flight requests, then release the pools and the channel."""
    if not services.in_flight.wait_idle(drain_timeout):
        logger.warning("Shutting down with %d requests still in flight", services.in_flight.count)
    if services.notifications is not None:
        services.notifications.close()
    for database in {id(db): db for db in (services.results_db, services.credits_db) if db is not None}.values():
        database.close()
    logger.info("Services shut down")


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> Flask:
    settings = settings or get_settings()
    services = services or build_services(settings)

    app = Flask(__name__)
    app.config["JWT_SECRET"] = settings.jwt_secret
    app.extensions["scraping_flow"] = services
    CORS(app, origins=list(settings.cors_origins), supports_credentials=True)
    orchestrator = services.orchestrator
    in_flight = services.in_flight

    @app.before_request
    def track_request_start() -> None:
        in_flight.enter()

    @app.teardown_request
    def track_request_end(exc: Optional[BaseException]) -> None:
        in_flight.leave()

    @app.errorhandler(ScrapingFlowError)
    def handle_flow_error(exc: ScrapingFlowError) -> Any:
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.__class__.__name__, exc.message)
        return jsonify({"status": exc.status, "message": exc.message}), exc.status_code

    @app.errorhandler(NotFound)
    def handle_not_found(exc: NotFound) -> Any:
        return jsonify({"status": "not_found", "message": f"Route {request.method} {request.path} not found."}), 404

    @app.get("/")
    def root() -> Any:
        return jsonify(
            {
                "status": "ok",
                "message": "Scraping Flow is running",
                "endpoints": {
                    "credits": f"GET {API_PREFIX}/credits",
                    "search": f"POST {API_PREFIX}/search",
                    "searches": f"GET {API_PREFIX}/searches",
                    "export": f"GET {API_PREFIX}/searches/:id/export",
                },
            }
        )

    @app.get("/healthz")
    def healthcheck() -> Any:
        """Lightweight health endpoint; does not touch the databases."""
        notifications = services.notifications
        return (
            jsonify(
                {
                    "status": "ok",
                    "notifications_connected": bool(notifications and notifications.connected),
                    "pending_notifications": notifications.pending_count if notifications else 0,
                    "revision": os.getenv("K_REVISION", "unknown"),
                }
            ),
            200,
        )

    @app.get(f"{API_PREFIX}/credits")
    @require_owner
    def credits_balance() -> Any:
        credits = orchestrator.get_balance(g.owner_id)
        return jsonify({"status": "success", "data": {"credits": credits}})

    @app.post(f"{API_PREFIX}/search")
    @require_owner
    def create_search() -> Any:
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        record = orchestrator.create_search(
            g.owner_id,
            payload.get("textQuery"),
            language_code=payload.get("languageCode"),
            requested_count=payload.get("maxResults"),
        )
        return jsonify({"status": "success", "data": record.to_public_dict()}), 201

    @app.get(f"{API_PREFIX}/searches")
    @require_owner
    def list_searches() -> Any:
        searches = orchestrator.list_searches(g.owner_id)
        return jsonify({"status": "success", "data": [s.to_public_dict() for s in searches]})

    @app.get(f"{API_PREFIX}/searches/<search_id>/export")
    @require_owner
    def export_csv(search_id: str) -> Any:
        rows = orchestrator.export_results(search_id, g.owner_id)
        return Response(
            rows_to_csv(rows),
            content_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{export_filename(search_id)}"'},
        )

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    settings = get_settings()
    services = build_services(settings)
    services.notifications.connect()

    app = create_app(services, settings)
    server = make_server("0.0.0.0", settings.port, app, threaded=True)

    def _terminate(signum, frame) -> None:
        logger.info("[BOOT] Received signal %s, draining requests", signum)
        # shutdown() blocks until serve_forever returns, so it cannot run on this thread.
        threading.Thread(target=server.shutdown, name="http-shutdown", daemon=True).start()

    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGINT, _terminate)

    logger.info("[BOOT] Binding on 0.0.0.0:%d", settings.port)
    try:
        server.serve_forever()
    finally:
        shutdown_services(services)
        server.server_close()


if __name__ == "__main__":
    main()
