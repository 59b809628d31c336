# flask_app/routes/metrics.py

from flask import Response, abort, current_app
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


def register_metrics_route(app):
    """Expose Prometheus metrics at METRICS_ENDPOINT when MONITORING_ENABLED is set"""

    @app.route(app.config.get("METRICS_ENDPOINT", "/metrics"))
    def metrics():
        if not current_app.config.get("MONITORING_ENABLED", False):
            abort(404)
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
