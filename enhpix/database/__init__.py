from enhpix.database.db import (
    Base,
    create_engine_from_settings,
    create_session_factory,
    create_tables,
    dialect_insert,
    drop_tables,
    session_scope,
    uuid4_str,
)

__all__ = [
    'Base',
    'create_engine_from_settings',
    'create_session_factory',
    'create_tables',
    'dialect_insert',
    'drop_tables',
    'session_scope',
    'uuid4_str',
]
