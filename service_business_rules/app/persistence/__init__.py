"""
Persistence for rules and execution logs.

- base: Store interfaces shared by every backend.
- memory: In-process stores used by tests and local runs.
- postgres: asyncpg-backed stores for production.
"""
