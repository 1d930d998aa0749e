"""
Database package for Loki.

aiosqlite connection management and schema creation for the state store.
"""
