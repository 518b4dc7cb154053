"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so relationships declared by string
resolve even when a single model module is imported in isolation.
"""

from xerosync.domain.members import db_models as members_db_models  # noqa: F401
from xerosync.domain.xero import db_models as xero_db_models  # noqa: F401
