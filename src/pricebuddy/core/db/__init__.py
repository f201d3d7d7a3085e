from .engine import create_engine, get_db, get_engine, get_session_factory, init_db
from .models import Base

__all__ = ["Base", "create_engine", "get_db", "get_engine", "get_session_factory", "init_db"]
