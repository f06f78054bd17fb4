from app.db.base import Base, build_session_factory, close_db, create_schema, get_session_factory, init_db, ping_db
from app.db.redis import close_redis, get_redis, init_redis

__all__ = [
    "Base",
    "build_session_factory",
    "close_db",
    "close_redis",
    "create_schema",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
    "ping_db",
]
