from batchex.db.connection import Database, Base, get_base

__all__ = ['Database', 'Base', 'get_base']
