"""
Configuration management for the deal analysis engine.

Loads settings from environment variables with sensible defaults.
Fund-specific RAG thresholds and criterion weights are not configured here;
they are supplied per fund by a ConfigService (see deal_analysis.store).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


class Config:
    """Configuration settings loaded from environment."""

    # Logging
    LOG_LEVEL: str = os.getenv('DEAL_ANALYSIS_LOG_LEVEL', 'INFO')
    LOG_FORMAT: str = os.getenv('DEAL_ANALYSIS_LOG_FORMAT', 'console')

    # Resilience defaults (per engine call)
    MAX_RETRIES: int = int(os.getenv('DEAL_ANALYSIS_MAX_RETRIES', '3'))
    RETRY_DELAY_MS: int = int(os.getenv('DEAL_ANALYSIS_RETRY_DELAY_MS', '2000'))
    QUALITY_THRESHOLD: int = int(os.getenv('DEAL_ANALYSIS_QUALITY_THRESHOLD', '50'))
    ENGINE_TIMEOUT_MS: int = int(os.getenv('DEAL_ANALYSIS_ENGINE_TIMEOUT_MS', '30000'))

    # Queue
    MAX_ATTEMPTS: int = int(os.getenv('DEAL_ANALYSIS_MAX_ATTEMPTS', '3'))
    PROCESSING_TIMEOUT_MINUTES: int = int(
        os.getenv('DEAL_ANALYSIS_PROCESSING_TIMEOUT_MINUTES', '15')
    )
    AVG_RUN_SECONDS: float = float(os.getenv('DEAL_ANALYSIS_AVG_RUN_SECONDS', '120'))
    QUEUE_RETENTION_HOURS: int = int(os.getenv('DEAL_ANALYSIS_QUEUE_RETENTION_HOURS', '24'))

    # Pipeline
    ENRICHMENT_FRESHNESS_HOURS: int = int(
        os.getenv('DEAL_ANALYSIS_ENRICHMENT_FRESHNESS_HOURS', '24')
    )
    MAX_CONCURRENT_RUNS: int = int(os.getenv('DEAL_ANALYSIS_MAX_CONCURRENT_RUNS', '10'))
    POLL_INTERVAL_SECONDS: float = float(
        os.getenv('DEAL_ANALYSIS_POLL_INTERVAL_SECONDS', '5')
    )

    # OpenAI (LLM-backed engines)
    OPENAI_API_KEY: str = os.getenv('OPENAI_API_KEY', '')
    OPENAI_CHAT_MODEL: str = os.getenv('OPENAI_CHAT_MODEL', 'gpt-4.1-mini')

    # Postgres store
    DATABASE_URL: str = os.getenv('DATABASE_URL', '')

    @classmethod
    def validate(cls) -> list[str]:
        """
        Validate configuration values.

        Returns:
            List of human-readable problems (empty when valid)
        """
        problems = []
        if cls.MAX_RETRIES < 0:
            problems.append('DEAL_ANALYSIS_MAX_RETRIES must be >= 0')
        if cls.RETRY_DELAY_MS < 0:
            problems.append('DEAL_ANALYSIS_RETRY_DELAY_MS must be >= 0')
        if not 0 <= cls.QUALITY_THRESHOLD <= 100:
            problems.append('DEAL_ANALYSIS_QUALITY_THRESHOLD must be within 0..100')
        if cls.MAX_ATTEMPTS < 1:
            problems.append('DEAL_ANALYSIS_MAX_ATTEMPTS must be >= 1')
        if cls.QUEUE_RETENTION_HOURS < 1:
            problems.append('DEAL_ANALYSIS_QUEUE_RETENTION_HOURS must be >= 1')
        if cls.MAX_CONCURRENT_RUNS < 1:
            problems.append('DEAL_ANALYSIS_MAX_CONCURRENT_RUNS must be >= 1')
        return problems


# Singleton config instance
config = Config()
