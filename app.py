from dotenv import load_dotenv
load_dotenv()

import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from claims import whitelist_api
from extensions import kv, limiter, snapshots
from health import health_api
from points_api import points_api


def _is_production() -> bool:
    return bool(os.getenv("RENDER") or os.getenv("VERCEL") or os.getenv("FLASK_ENV") == "production")


def create_app(store=None, config: dict = None) -> Flask:
    """Build the rewards API.

    `store` overrides the KV store built from KV_REDIS_URL (tests pass a fake).
    """
    app = Flask(__name__)
    app.config["KV_REDIS_URL"] = os.getenv("KV_REDIS_URL") or os.getenv("REDIS_URL") or os.getenv("KV_URL")
    app.config["KV_ATOMIC_SCRIPTS"] = os.getenv("KV_ATOMIC_SCRIPTS", "1") != "0"
    # In production set RATE_LIMIT_STORAGE_URL to a Redis URL so limits hold across instances.
    app.config["RATELIMIT_STORAGE_URI"] = os.getenv("RATE_LIMIT_STORAGE_URL", "memory://")
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    if config:
        app.config.update(config)

    if _is_production():
        # Trust a single proxy hop
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    if not app.debug:
        app.logger.setLevel(logging.INFO)

    kv.init_app(app, store=store)
    snapshots.init_app(app)
    limiter.init_app(app)
    CORS(app)

    app.register_blueprint(whitelist_api)
    app.register_blueprint(points_api)
    app.register_blueprint(health_api)

    @app.errorhandler(HTTPException)
    def _http_error(e):
        return jsonify({"ok": False, "error": e.description or e.name}), e.code

    @app.errorhandler(429)
    def _rate_limited(e):
        return jsonify({"ok": False, "error": "Too many requests. Slow down and retry."}), 429

    @app.errorhandler(Exception)
    def _unhandled(e):
        app.logger.exception("Unhandled error")
        return jsonify({"ok": False, "error": "Server error"}), 500

    @app.after_request
    def add_headers(resp):
        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    return app


app = create_app()


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    print("=" * 60)
    print("CurrentX Rewards Ledger API")
    print("=" * 60)
    print(f"Season: {os.getenv('POINTS_SEASON_ID') or '(not configured)'}")
    print(f"KV store: {'configured' if app.config.get('KV_REDIS_URL') else 'NOT configured'}")
    print(f"Summary: http://localhost:{port}/api/whitelist-rewards/summary")
    print(f"Health:  http://localhost:{port}/api/whitelist-rewards/health")
    print("=" * 60)
    app.run(host='0.0.0.0', port=port, debug=os.getenv('FLASK_DEBUG') == '1')
