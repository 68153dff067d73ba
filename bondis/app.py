from __future__ import annotations

import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify, request
from flask_cors import CORS

from .config import Settings, build_settings, load_config
from .fetchers.jaha import SourceClient
from .health import get_health_status
from .ingest import Ingestor
from .query import QueryService
from .stats import IngestStats
from .store import PositionStore, StoreError


logger = logging.getLogger(__name__)

ROUTES = (
    ("/positions", "Most recent bus positions, newest first (?limit=N)."),
    ("/api/status", "Ingestion status, uptime and stored position count."),
    ("/api/daily", "Rows stored per capture day with first and last report time."),
)


def create_app(
    store: PositionStore,
    stats: IngestStats,
    settings: Optional[Settings] = None,
) -> Flask:
    settings = settings or Settings()
    service = QueryService(store, max_limit=settings.max_limit)

    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(app)

    @app.route("/")
    def index() -> Any:
        items = "".join(
            f'<li><a href="{path}">GET {path}</a> - {description}</li>' for path, description in ROUTES
        )
        return f"<h1>Available Routes</h1><ul>{items}</ul>"

    @app.route("/positions")
    @app.route("/api/positions")
    def api_positions() -> Any:
        raw_limit = request.args.get("limit")
        if raw_limit is None:
            limit = settings.default_limit
        else:
            try:
                limit = int(raw_limit)
            except ValueError:
                return jsonify({"success": False, "error": f"Invalid limit: {raw_limit!r}"}), 400
        try:
            rows = service.handle_query(limit)
        except StoreError as exc:
            logger.error("Positions query failed: %s", exc)
            return jsonify({"success": False, "error": "Unable to read positions."}), 500
        return jsonify(rows)

    @app.route("/api/daily")
    def api_daily() -> Any:
        try:
            days = store.daily_summary()
        except StoreError as exc:
            logger.error("Daily summary failed: %s", exc)
            return jsonify({"success": False, "error": "Unable to summarize positions."}), 500
        return jsonify({"success": True, "data": days})

    @app.route("/health")
    @app.route("/api/health")
    @app.route("/api/status")
    def api_status() -> Any:
        status = get_health_status(
            stats,
            store,
            settings.staleness_warning_sec,
            settings.staleness_critical_sec,
        )
        return jsonify(status)

    return app


def _handle_sigterm(signum: int, frame: Any) -> None:
    raise SystemExit(0)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    try:
        settings = build_settings(load_config())
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return 1

    store = PositionStore(settings.db_path)
    try:
        store.ensure_schema()
    except StoreError as exc:
        logger.error("Cannot initialize position store: %s", exc)
        return 1

    stats = IngestStats()
    client = SourceClient(
        base_url=settings.base_url,
        timeout_seconds=settings.timeout_seconds,
        max_response_bytes=settings.max_response_bytes,
    )
    ingestor = Ingestor(
        client,
        store,
        settings.lines,
        request_delay_seconds=settings.request_delay_ms / 1000,
        stats=stats,
    )
    app = create_app(store, stats, settings)

    logger.info("Starting background scheduler...")
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        ingestor.run,
        "interval",
        seconds=settings.poll_interval_seconds,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()
    logger.info(
        "Scheduler started: lines %s every %ss",
        settings.lines,
        settings.poll_interval_seconds,
    )

    signal.signal(signal.SIGTERM, _handle_sigterm)
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    try:
        logger.info("Flask server starting on http://%s:%s", host, port)
        app.run(host=host, port=port)
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Shutting down: waiting for the current line to finish...")
        ingestor.stop()
        scheduler.shutdown(wait=True)
        client.close()
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
