from recipe_collections.db.base import Base
from recipe_collections.db.config import DBSettings, get_db_settings
from recipe_collections.db.engine import make_engine

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
]
