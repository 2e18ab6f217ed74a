import os
import logging
import uuid
from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
import requests.exceptions

from cc_trace import TraceContext, set_trace, clear_trace
from charger_config import CHARGER_MODEL
from charger_search import needs_refetch, search_chargers
from filter_pipeline import FilterCriteria, apply_filters, connector_options
from models import parse_coordinate
from open_charge_map import OpenChargeMapError
from serializers import (
    charger_from_dict,
    filter_result_to_dict,
    parse_list,
    place_from_dict,
    search_result_to_dict,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Bad address or empty Google response (ZERO_RESULTS, etc.)
            if exc_type is ValueError and "failed" in msg:
                sentry_sdk.add_breadcrumb(
                    category="google_maps",
                    message=msg,
                    level="warning",
                )
                return None
            # Open Charge Map retries exhausted / rejected key
            if exc_type is not None and issubclass(exc_type, OpenChargeMapError):
                sentry_sdk.add_breadcrumb(
                    category="open_charge_map",
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=CHARGER_MODEL.version,
        environment=os.environ.get("CHARGECHECK_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Proxy fix: most PaaS hosts run behind a reverse proxy that sets
# X-Forwarded-For.  ProxyFix rewrites request.remote_addr to the real
# client IP so both Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: search fans out to one Open Charge Map call per place, so
# it gets its own, tighter limit.  In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SEARCH = os.environ.get("RATE_LIMIT_SEARCH", "20/minute")

# Per-stage and per-call timings in /api/search responses when the payload
# asks for "debug_trace".  Off unless explicitly enabled for the deployment.
DEBUG_TRACE_ENABLED = os.environ.get("CHARGECHECK_DEBUG_TRACE", "0") == "1"

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Searches will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _error(message, status, **extra):
    body = {"error": message, "request_id": getattr(g, "request_id", "unknown")}
    body.update(extra)
    return jsonify(body), status


def _payload_number(data, *keys):
    """First numeric value under *keys*, or None.  Booleans do not count."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value == value:
            return value
    return None


def _origin_from_payload(data):
    """(coordinate or None, error message or None) from lat/lng fields."""
    if "lat" not in data and "lng" not in data:
        return None, None
    coordinate = parse_coordinate({"lat": data.get("lat"), "lng": data.get("lng")})
    if coordinate is None:
        return None, "lat and lng must be valid coordinates"
    return coordinate, None


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@app.route("/api/search", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
def api_search():
    """Run a search.

    Accepts JSON: {"query": "coffee", "location": "Oakland, CA"
    | "lat": .., "lng": .., "filters": {...}, "debug_trace": true}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    query = str(data.get("query") or "").strip()
    if not query:
        return _error("query is required", 400)

    origin, origin_error = _origin_from_payload(data)
    if origin_error:
        return _error(origin_error, 400)

    config_ok, missing_keys = _check_service_config()
    if not config_ok:
        return _error("missing config", 503, missing_keys=missing_keys)

    criteria = FilterCriteria.from_dict(data.get("filters"))
    request_id = g.request_id
    api_key = os.environ.get("GOOGLE_MAPS_API_KEY")
    want_trace = DEBUG_TRACE_ENABLED and data.get("debug_trace") is True
    trace_ctx = TraceContext(
        trace_id=request_id, query=query, model_version=CHARGER_MODEL.version
    )
    set_trace(trace_ctx)
    try:
        result = search_chargers(
            query,
            api_key,
            criteria,
            origin=origin,
            location=str(data.get("location") or "").strip() or None,
        )
        trace_ctx.log_summary()
        output = search_result_to_dict(result)
        output["request_id"] = request_id
        if want_trace:
            output["trace"] = trace_ctx.full_trace_dict()
        return jsonify(output)
    except (ValueError, OpenChargeMapError, requests.exceptions.RequestException) as e:
        trace_ctx.log_summary()
        logger.warning("[%s] Search %r failed: %s", request_id, query, e)
        extra = {"trace": trace_ctx.full_trace_dict()} if want_trace else {}
        return _error(f"Upstream lookup failed: {e}", 502, **extra)
    finally:
        clear_trace()


@app.route("/api/filter", methods=["POST"])
def api_filter():
    """Re-filter a previous search's chargers/places without any upstream fetch.

    Accepts JSON: {"chargers": [...], "places": [...], "filters": {...},
    "fetch_walking_minutes": 5, "search_radius_miles": 10}

    The two fetch fields are echoed from the earlier /api/search response
    and decide needs_refetch; either may be omitted.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    if not isinstance(data.get("chargers"), list) or not isinstance(data.get("places"), list):
        return _error("chargers and places lists are required", 400)

    chargers = parse_list(data["chargers"], charger_from_dict)
    places = parse_list(data["places"], place_from_dict)
    criteria = FilterCriteria.from_dict(data.get("filters"))

    result = apply_filters(chargers, places, criteria)
    output = filter_result_to_dict(result)

    output["needs_refetch"] = needs_refetch(
        criteria,
        _payload_number(data, "fetch_walking_minutes", "fetchWalkingMinutes"),
        _payload_number(data, "search_radius_miles", "searchRadiusMiles"),
    )
    output["filters"] = criteria.to_dict()
    output["connector_options"] = connector_options(chargers)
    output["request_id"] = g.request_id
    return jsonify(output)


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
        "model_version": CHARGER_MODEL.version,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return _error("Method not allowed", 405)


@app.errorhandler(500)
def internal_error(e):
    logger.exception("[%s] Unhandled error", getattr(g, "request_id", "unknown"))
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
