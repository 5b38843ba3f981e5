"""
Database Package
================

Exports key database components.
"""

from hyle.db.models import Base, RunEvent
from hyle.db.connection import init_db, get_session_maker, close_db
