"""Allow ``python -m platform_resilience``."""

from platform_resilience.fallback_manager import main

main()
