from .connection import get_engine, get_session_factory, init_db, close_db, Base

# Import identity models to ensure they are registered with Base
from .identity_models import IdentityDocumentDB

__all__ = [
    'get_engine', 'get_session_factory', 'init_db', 'close_db', 'Base',
    'IdentityDocumentDB',
]
