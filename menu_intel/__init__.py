"""
Menu Intelligence Pipeline

This package provides the core intelligence layer for:
- Rate-limited access to the taste-graph service
- Restaurant taste profile enrichment and specialty-dish ranking
- Provider-agnostic AI content generation
- Menu item scoring and dashboard rollups
- Human review of AI-generated menu changes
"""

__version__ = "1.0.0"
