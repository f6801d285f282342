import logging
import os
import time
from typing import Any, Mapping, Optional

import structlog
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from limits.storage import storage_from_string
from werkzeug.exceptions import HTTPException

from pagefields.config import AppSettings, FetcherConfig, GateConfig, ValidatorConfig
from pagefields.extensions import cache
from pagefields.utils.correlation import echo_request_id, start_request
from pagefields.utils.logging_config import setup_logging
from pagefields.utils.rate_limits import CounterStore


def _parse_origins(raw_value: str | None) -> list[str]:
    """Split comma/space separated origin overrides into a clean list."""
    if not raw_value:
        return []
    return [
        fragment.strip()
        for fragment in raw_value.replace(",", " ").split()
        if fragment.strip()
    ]


def init_cache(app: Flask, default_timeout: int) -> None:
    """Configure the Flask-Caching backend for extraction results."""
    env_name = (app.config.get("ENV") or "").strip().lower()
    cache_type_env = (app.config.get("CACHE_TYPE") or "").strip()

    # Explicit setting takes precedence, otherwise default by env.
    if cache_type_env:
        selected_cache_type = cache_type_env
    elif env_name == "production":
        selected_cache_type = "RedisCache"
    else:
        selected_cache_type = "SimpleCache"

    cache_config: dict[str, str | int] = {
        "CACHE_TYPE": selected_cache_type,
        "CACHE_DEFAULT_TIMEOUT": default_timeout,
    }

    if selected_cache_type.lower() in {"redis", "rediscache"}:
        redis_url = (os.getenv("CACHE_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()
        if redis_url:
            cache_config["CACHE_TYPE"] = "RedisCache"
            cache_config["CACHE_REDIS_URL"] = redis_url
        else:
            if env_name == "production":
                app.logger.error(
                    "CACHE_TYPE is RedisCache but CACHE_REDIS_URL is not set; falling back to SimpleCache."
                )
            cache_config["CACHE_TYPE"] = "SimpleCache"
    elif selected_cache_type.lower() == "nullcache":
        cache_config["CACHE_TYPE"] = "NullCache"
    elif selected_cache_type.lower() != "simplecache":
        # Unrecognised backend; fall back to SimpleCache to keep the service running.
        app.logger.error(
            "Unsupported CACHE_TYPE '%s'; falling back to SimpleCache.", selected_cache_type
        )
        cache_config["CACHE_TYPE"] = "SimpleCache"

    cache.init_app(app, config=cache_config)
    app.config.update(cache_config)
    app.logger.info("Cache backend: %s", app.config["CACHE_TYPE"])


def init_counter_store(app: Flask) -> CounterStore:
    """Build the shared counter store behind the admission gate."""
    storage_uri = (app.config.get("RATELIMIT_STORAGE_URI") or "").strip()
    if not storage_uri:
        if app.config.get("CACHE_TYPE") == "RedisCache" and app.config.get(
            "CACHE_REDIS_URL"
        ):
            storage_uri = app.config["CACHE_REDIS_URL"]
        else:
            storage_uri = "memory://"

    try:
        storage = storage_from_string(storage_uri)
    except Exception as exc:  # pragma: no cover - fail-safe for boot issues
        app.logger.error(
            "Failed to initialize rate limiter storage '%s': %s. Falling back to memory://",
            storage_uri,
            exc,
        )
        storage_uri = "memory://"
        storage = storage_from_string(storage_uri)

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.logger.info("Rate limiter storage: %s", storage_uri)
    return CounterStore(storage)


def init_pipeline(app: Flask, counters: CounterStore) -> None:
    """Wire the admission gate and the extraction pipeline into ``app``."""
    from pagefields.services.admission import AdmissionGate, register_admission_gate
    from pagefields.services.fetch import Fetcher
    from pagefields.services.orchestrator import ScraperOrchestrator
    from pagefields.services.parser import HtmlParser
    from pagefields.services.result_cache import ResultCache
    from pagefields.services.url_validator import UrlValidator

    gate_config = app.config.get("GATE_CONFIG") or GateConfig.from_env(
        app.config.get("ENV")
    )
    register_admission_gate(app, AdmissionGate(gate_config, counters))

    app.extensions["counter_store"] = counters
    app.extensions["orchestrator"] = ScraperOrchestrator(
        validator=UrlValidator(
            app.config.get("VALIDATOR_CONFIG") or ValidatorConfig.from_env()
        ),
        fetcher=Fetcher(app.config.get("FETCHER_CONFIG") or FetcherConfig.from_env()),
        parser=HtmlParser(),
        cache=ResultCache(cache, ttl=app.config["CACHE_DEFAULT_TIMEOUT"]),
    )


def register_error_handlers(app: Flask) -> None:
    from pagefields.services.exceptions import ScraperError, wrap_unexpected
    from pagefields.utils.error_responses import error_response

    @app.errorhandler(ScraperError)
    def handle_scraper_error(error):
        return error_response(error)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        response = jsonify(
            {"success": False, "error": error.description or error.name}
        )
        response.status_code = error.code or 500
        return response

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        logging.getLogger(__name__).exception("Unhandled error: %s", error)
        return error_response(wrap_unexpected(error))


def register_request_logging(app: Flask) -> None:
    access_logger = structlog.get_logger("pagefields.http")

    @app.before_request
    def start_request_context():
        start_request(
            request.headers, path=request.path, remote_ip=request.remote_addr
        )
        g.request_started = time.perf_counter()
        access_logger.info("http.request", method=request.method)

    @app.after_request
    def finish_request_context(response):
        started = g.get("request_started")
        elapsed_ms = (
            round((time.perf_counter() - started) * 1000, 2) if started else None
        )
        echo_request_id(response)
        level = "info"
        if response.status_code >= 500:
            level = "error"
        elif response.status_code >= 400:
            level = "warning"
        getattr(access_logger, level)(
            "http.response",
            method=request.method,
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
        )
        return response


def create_app(test_config: Optional[Mapping[str, Any]] = None):
    """Create and configure an instance of the Flask application."""
    load_dotenv()

    setup_logging()
    logger = logging.getLogger(__name__)

    settings = AppSettings()
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        ENV=settings.ENV,
        DEBUG=settings.DEBUG,
        CACHE_TYPE=settings.CACHE_TYPE,
        CACHE_DEFAULT_TIMEOUT=settings.CACHE_DEFAULT_TIMEOUT,
        RATELIMIT_STORAGE_URI=settings.RATELIMIT_STORAGE_URI,
        PIPELINE_DEADLINE_SECONDS=settings.PIPELINE_DEADLINE_SECONDS,
    )
    if test_config:
        app.config.update(test_config)
    app.json.sort_keys = False

    logger.info("Application starting with configuration:")
    logger.info(f"  ENV: {app.config['ENV']}")
    logger.info(f"  CACHE_TYPE: {app.config['CACHE_TYPE']}")
    logger.info(f"  RATELIMIT_STORAGE_URI: {app.config['RATELIMIT_STORAGE_URI']}")

    # Request logging runs first so the gate's rejections carry a request id.
    register_request_logging(app)

    init_cache(app, app.config["CACHE_DEFAULT_TIMEOUT"])
    counters = init_counter_store(app)
    init_pipeline(app, counters)

    from flask_cors import CORS
    from flask_talisman import Talisman

    allowed_origins = _parse_origins(settings.ALLOWED_ORIGINS)
    CORS(app, resources={r"/api/*": {"origins": allowed_origins or "*"}})
    Talisman(app, content_security_policy=None, force_https=False)

    from pagefields.routes import api, utility

    app.register_blueprint(api.bp)
    app.register_blueprint(utility.bp)
    register_error_handlers(app)

    return app
