"""
Platform Resilience

Multi-endpoint request routing for social publishing platforms: endpoint
health tracking, scored selection, recovery probing and auth fallback.

Usage:
    from platform_resilience.fallback_manager import get_fallback_manager

    manager = get_fallback_manager("twitter")
    endpoint = await manager.select_endpoint("post")
"""

__version__ = "1.0.0"
