"""
Backend package for the MES integration API.

This package provides a FastAPI application for work orders and production
tracking, plus the outgoing/incoming webhook machinery (delivery worker,
dead letters, health tracking) with database and queue abstractions.
"""
