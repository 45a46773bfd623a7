"""
External service clients for the deal analysis engine.
"""

from .openai_client import OpenAIClient

__all__ = [
    'OpenAIClient',
]
