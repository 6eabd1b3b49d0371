"""Application package for the Certano learning-quiz backend.

The `gamification` subpackage holds the per-user statistics, quest and
badge logic; the remaining modules provide the FastAPI application,
SQLModel tables, repositories, services and the Stripe billing gateway.
"""
