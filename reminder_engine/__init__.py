"""
Reminder engine: Web Push delivery and appointment reminder scheduling.

Sub-packages:
- config: Environment-driven settings
- db: Engine, session factory and Alembic migrations
- models: SQLAlchemy models (subscriptions, reminders, ledger)
- services: Claiming, delivery and dispatch orchestration
- utils: Key import, VAPID signing, payload encryption, logging
- api: FastAPI routers
"""

__version__ = "1.0.0"
