from dotenv import load_dotenv
load_dotenv()
from flask import Flask, request, jsonify
from flask_cors import CORS
from sqlalchemy import text
from datetime import datetime
import os
from flask_limiter import Limiter
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import db, get_redis

app = Flask(__name__)

secret_key = os.getenv('SECRET_KEY') or os.getenv('FLASK_SECRET_KEY')
if not secret_key:
    # Safe dev fallback. Set SECRET_KEY on Render for production.
    secret_key = 'dev-secret-key-change-me'
app.config['SECRET_KEY'] = secret_key

if (os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production") and secret_key.startswith("dev-secret-key-change"):
    raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")


# -------------------------------
# Client IP resolution
# -------------------------------
# Render runs behind a reverse proxy; trust a single hop there.
if os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production":
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
def get_client_ip() -> str:
    """Return the best-effort client IP.

    After ProxyFix, request.access_route[0] should be the real client IP.
    Falls back to request.remote_addr for local development.
    """
    try:
        if request.access_route:
            return request.access_route[0]
    except Exception:
        pass
    return request.remote_addr or "0.0.0.0"

_db_url = os.getenv("DATABASE_URL")
if not _db_url:
    if os.getenv("RENDER") == "true":
        raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
    _db_url = "sqlite:///predictions.db"

if _db_url.startswith("postgres://"):
    _db_url = _db_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = _db_url
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
    "pool_recycle": 300,
    "pool_pre_ping": True,
}

# Initialize extensions
db.init_app(app)
CORS(app)

# Rate limiting
# - In production (Render), set RATE_LIMIT_STORAGE_URL to a Redis URL for multi-instance correctness.
# - Defaults to in-memory storage for simplicity.
limiter = Limiter(
    get_client_ip,
    app=app,
    default_limits=["200 per day", "50 per hour"],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
)


# ==================== HEALTH CHECK ====================

@app.route('/api/health', methods=['GET'])
def health_check():
    try:
        # SQLAlchemy 2.x requires raw SQL to be wrapped in text().
        db.session.execute(text('SELECT 1'))
    except Exception as e:
        app.logger.exception("Health check failed")
        return jsonify({
            'success': False,
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': datetime.utcnow().isoformat()
        }), 500

    cache = 'disabled'
    client = get_redis()
    if client is not None:
        try:
            client.ping()
            cache = 'connected'
        except Exception:
            cache = 'unreachable'
    return jsonify({
        'success': True,
        'status': 'healthy',
        'timestamp': datetime.utcnow().isoformat(),
        'database': 'connected',
        'cache': cache,
        'version': '1.0.0'
    })


# ==================== ROUNDS / PREDICTIONS (SPLIT MODULES) ====================
# NOTE: imported after db.init_app so the models bind to this app.
from models_rounds import PerformanceLog, MarketCacheEntry, PriceHistory, CoinMetadata  # noqa: F401,E402
from models_predictions import PredictionSnapshot, PointTransaction, PointSettlement, PipelineLock  # noqa: F401,E402
from results import results_api  # noqa: E402
from admin_pipeline import admin_pipeline  # noqa: E402

limiter.limit("60 per minute")(results_api)
limiter.limit("5 per minute")(admin_pipeline)

app.register_blueprint(results_api)
app.register_blueprint(admin_pipeline)

with app.app_context():
    db.create_all()


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print("=" * 60)
    print("Crypto Prediction Rounds")
    print("=" * 60)
    print(f"Results API: http://localhost:{port}/api/results/latest")
    print(f"Manual run: POST http://localhost:{port}/api/admin/pipeline/run (X-Admin-Key)")
    print("=" * 60)

    app.run(debug=debug, port=port)
