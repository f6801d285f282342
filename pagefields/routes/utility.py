from flask import Blueprint, current_app, jsonify

bp = Blueprint("utility", __name__)


@bp.route("/up")
def health():
    """Liveness probe; always exempt from the admission gate."""
    counters = current_app.extensions.get("counter_store")
    storage_ok = True
    if counters is not None:
        try:
            storage_ok = bool(counters.storage.check())
        except Exception:  # noqa: BLE001 - report, never raise, from the probe
            current_app.logger.exception("Counter storage health check failed")
            storage_ok = False
    status_code = 200 if storage_ok else 503
    return (
        jsonify(
            {
                "status": "ok" if storage_ok else "error",
                "details": {"counter_store": "OK" if storage_ok else "Error"},
            }
        ),
        status_code,
    )


@bp.route("/robots.txt")
def robots_txt():
    response = current_app.response_class(
        "User-agent: *\nDisallow: /api/\n", mimetype="text/plain"
    )
    return response
