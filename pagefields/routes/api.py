import json
import logging
import time
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from pagefields.services.exceptions import ValidationError
from pagefields.services.fields import normalize_fields
from pagefields.services.orchestrator import ScraperOrchestrator
from pagefields.utils.correlation import bind_request_context
from pagefields.utils.error_responses import error_response

bp = Blueprint("api", __name__, url_prefix="/api/v1")
logger = logging.getLogger(__name__)


class MissingParameter(ValidationError):
    error_code = "MISSING_PARAMETER"


def _orchestrator() -> ScraperOrchestrator:
    return current_app.extensions["orchestrator"]


def _extraction_params() -> dict[str, Any]:
    if request.method == "POST":
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON in request body")
        return payload
    return {"url": request.args.get("url"), "fields": request.args.get("fields")}


def _parse_fields(raw_fields: Any) -> Any:
    if isinstance(raw_fields, str):
        try:
            return json.loads(raw_fields)
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid fields JSON format") from exc
    return raw_fields


@bp.route("/data", methods=["GET", "POST"])
def extract_data():
    """Fetch ``url`` and extract the requested ``fields`` from it."""
    try:
        params = _extraction_params()
        url = params.get("url")
        if not isinstance(url, str) or not url.strip():
            raise MissingParameter("URL parameter is required")
        raw_fields = params.get("fields")
        if not raw_fields:
            raise MissingParameter("fields parameter is required")
        fields = normalize_fields(_parse_fields(raw_fields))
        if not fields:
            raise MissingParameter("fields parameter is required")
    except ValidationError as exc:
        return error_response(exc, status=400)

    bind_request_context(url=url, fields_count=len(fields))
    deadline = time.monotonic() + current_app.config["PIPELINE_DEADLINE_SECONDS"]
    result = _orchestrator().extract(url, fields, deadline=deadline)
    if not result.success:
        return error_response(result.error)
    return jsonify(result.to_dict()), 200
