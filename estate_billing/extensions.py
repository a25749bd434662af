"""
Flask extensions initialization module.
"""

import logging

import redis
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    init_redis(app)

    return app


def init_redis(app):
    """Initialize the Redis connection used for per-tenant locks."""
    global redis_client

    redis_url = app.config.get("REDIS_URL")
    if not redis_url:
        redis_client = None
        logger.info("REDIS_URL not set, tenant locks are process-local")
        return None

    redis_client = redis.from_url(
        redis_url,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )
    logger.info("Redis initialized for tenant locks")
    return redis_client
