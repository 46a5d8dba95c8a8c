import os
import sys
import datetime
import logging
from collections import namedtuple
from contextlib import closing

import requests
from flask import Flask, jsonify


def log_level(name, default=logging.INFO):
    """Map a level name like "debug" to its number, or default when unknown."""
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else default


app = Flask(__name__)
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
app.logger.setLevel(log_level(LOG_LEVEL))
if log_level(LOG_LEVEL, None) is None:
    app.logger.warning("Unknown LOG_LEVEL %r, using INFO", LOG_LEVEL)

APP_VERSION = os.environ.get("APP_VERSION", "0.2.0")
SYSTEM_NAME = "home-brain"
PORT = int(os.environ.get("PORT", "8080"))
PROBE_TIMEOUT = float(os.environ.get("PROBE_TIMEOUT", "5"))

ServiceDescriptor = namedtuple("ServiceDescriptor", ["name", "probe_url", "public_url"])
ProbeResult = namedtuple("ProbeResult", ["healthy", "message"])

# -------------------------
# Downstream services (probe URL is cluster-internal, url is public)
# -------------------------
SERVICES = {
    svc.name: svc
    for svc in (
        ServiceDescriptor(
            "immich",
            os.environ.get(
                "IMMICH_PROBE_URL",
                "http://immich-server.immich.svc.cluster.local/api/server-info/ping",
            ),
            os.environ.get("IMMICH_PUBLIC_URL", "https://immich.kanokgan.com"),
        ),
        ServiceDescriptor(
            "jellyfin",
            os.environ.get(
                "JELLYFIN_PROBE_URL",
                "http://jellyfin.jellyfin.svc.cluster.local:8096/health",
            ),
            os.environ.get("JELLYFIN_PUBLIC_URL", "https://jellyfin.kanokgan.com"),
        ),
    )
}


def timestamp_iso_utc():
    """Return current UTC timestamp in ISO format."""
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    return now.isoformat().replace("+00:00", "Z")


def probe_service(url, timeout=PROBE_TIMEOUT):
    """GET url once and reduce the outcome to ProbeResult(healthy, message).

    Transport errors yield the error text as message, a completed request
    yields "healthy" on 200 and "unhealthy" on anything else.
    """
    try:
        # stream: wait for the status line only, the body is never read
        r = requests.get(url, timeout=timeout, stream=True)
    except requests.exceptions.RequestException as e:
        message = str(e) or e.__class__.__name__
        app.logger.warning("Probe %s failed: %s", url, message)
        return ProbeResult(False, message)

    with closing(r):
        if r.status_code == 200:
            return ProbeResult(True, "healthy")
        app.logger.warning("Probe %s returned %s", url, r.status_code)
        return ProbeResult(False, "unhealthy")


def service_report(svc):
    result = probe_service(svc.probe_url)
    return {
        "healthy": result.healthy,
        "status": result.message,
        "url": svc.public_url,
    }


# -------------------------
# Liveness
# -------------------------
@app.route("/health", methods=["GET"])
def health():
    return jsonify({
        "status": "alive",
        "version": APP_VERSION,
        "system": SYSTEM_NAME,
    }), 200


# -------------------------
# Downstream status
# -------------------------
@app.route("/api/services", methods=["GET"])
def services_status():
    """Probe every service in turn; always 200, health lives in the body."""
    reports = {}
    for name, svc in SERVICES.items():
        reports[name] = service_report(svc)
    return jsonify({
        "timestamp": timestamp_iso_utc(),
        "services": reports,
    }), 200


@app.route("/api/services/<name>", methods=["GET"])
def service_status(name):
    svc = SERVICES.get(name)
    if svc is None:
        return jsonify({"error": "unknown service", "service": name}), 404

    report = service_report(svc)
    status = 200 if report["healthy"] else 503
    return jsonify({"service": svc.name, **report}), status


def main():
    app.logger.info("HomeBrain backend %s starting on :%d...", APP_VERSION, PORT)
    try:
        app.run(host="0.0.0.0", port=PORT)
    except OSError as e:
        app.logger.critical("Server failed to start: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
