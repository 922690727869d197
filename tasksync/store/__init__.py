from .db import get_conn, init_db, init_schema

__all__ = ["get_conn", "init_db", "init_schema"]
