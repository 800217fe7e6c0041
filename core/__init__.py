"""
Core utilities and configuration for the facility pipeline.

This package provides foundational components used by both the ETL pipeline
and the search service:

Modules:
    config: Settings loaded from the environment (pydantic-settings)
    database: Async engine and session factory construction
    exceptions: Custom exception hierarchy with retry classification
    logging: Logging configuration
    rate_limiter: Non-blocking token bucket
    retry: Exponential backoff helper

Usage:
    from core.config import get_settings
    from core.database import create_session_factory
    from core.exceptions import NetworkError, AuthenticationError
    from core.logging import setup_logging

Example:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    engine, session_factory = create_session_factory(settings.DATABASE_URL)
    async with session_factory() as session:
        ...
"""

