"""
LLM prompts for the deal analysis engines.

Provides system and user prompts for:
- Specialized engine scoring (one dimension per engine)
- Executive summary synthesis
"""
