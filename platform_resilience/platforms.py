"""
Platform configuration for Platform Resilience.

Static, per-platform data: the ordered list of candidate API base URLs and
the authentication settings used when credentials are rejected.  Endpoint
lists are never mutated at runtime.

Configuration is read from ``configs/platforms.json`` inside the package,
shipped as package data (override with PLATFORM_RESILIENCE_CONFIG).
Secrets are never stored in that file; each platform names the environment
variables holding them::

    {
      "platforms": [
        {
          "slug": "twitter",
          "endpoints": ["https://api.twitter.com/2", "https://api.twitter.com/1.1"],
          "auth_url": "https://twitter.com/i/oauth2/authorize",
          "client_id_env": "TWITTER_CLIENT_ID",
          "redirect_uri": "https://example.com/oauth/callback",
          "scopes": ["tweet.read", "tweet.write"],
          "alternative_auth_methods": ["api_key"],
          "api_key_env": "TWITTER_API_KEY"
        }
      ]
    }

Platforms missing from the file fall back to the built-in endpoint lists
below; unknown platforms get the generic default list.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from platform_resilience.errors import ConfigurationError

logger = logging.getLogger("platforms")

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PLATFORMS_CONFIG_PATH = Path(__file__).resolve().parent / "configs" / "platforms.json"

# ---------------------------------------------------------------------------
# Built-in endpoint sets
# ---------------------------------------------------------------------------

DEFAULT_PROBE_PATH = "/me"

GENERIC_ENDPOINTS: List[str] = [
    "https://api.twitter.com/2",
    "https://api.twitter.com/1.1",
    "https://graph.facebook.com/v18.0",
    "https://graph.facebook.com/v17.0",
    "https://graph.facebook.com/v16.0",
]

PLATFORM_ENDPOINTS: Dict[str, List[str]] = {
    "twitter": [
        "https://api.twitter.com/2",
        "https://api.twitter.com/1.1",
    ],
    "facebook": [
        "https://graph.facebook.com/v18.0",
        "https://graph.facebook.com/v17.0",
        "https://graph.facebook.com/v16.0",
    ],
    # Instagram goes through the Facebook Graph API
    "instagram": [
        "https://graph.facebook.com/v18.0",
        "https://graph.facebook.com/v17.0",
    ],
    "linkedin": [
        "https://api.linkedin.com/v2",
        "https://api.linkedin.com/v1",
    ],
}

AUTH_METHODS = ("api_key", "app_secret", "manual_token")


# ---------------------------------------------------------------------------
# PlatformConfig dataclass
# ---------------------------------------------------------------------------


@dataclass
class PlatformConfig:
    """Static configuration for a single platform."""

    slug: str
    endpoints: List[str] = field(default_factory=list)
    auth_url: str = ""
    client_id: str = ""
    redirect_uri: str = ""
    scopes: List[str] = field(default_factory=list)
    alternative_auth_methods: List[str] = field(default_factory=list)
    probe_path: str = DEFAULT_PROBE_PATH
    api_key: str = ""
    app_secret: str = ""
    manual_token: str = ""

    @property
    def has_alternative_auth(self) -> bool:
        return bool(self.alternative_auth_methods)

    def candidate_endpoints(self, operation_type: str = "default") -> List[str]:
        """Ordered candidate base URLs.

        *operation_type* is accepted for every call site but does not change
        the set today.
        """
        if self.endpoints:
            return list(self.endpoints)
        return list(PLATFORM_ENDPOINTS.get(self.slug, GENERIC_ENDPOINTS))

    def __repr__(self) -> str:
        alt = ",".join(self.alternative_auth_methods) or "none"
        return f"PlatformConfig({self.slug!r}, {len(self.candidate_endpoints())} endpoints, alt={alt})"


def _env(entry: Dict[str, Any], name: str) -> str:
    """Resolve ``<name>`` directly or through ``<name>_env``."""
    env_var = entry.get(f"{name}_env", "")
    if env_var:
        value = os.getenv(env_var, "")
        if not value:
            logger.debug("Platform %s: env var %s not set", entry.get("slug", "?"), env_var)
        return value
    return str(entry.get(name, "") or "")


def _config_from_entry(entry: Dict[str, Any]) -> PlatformConfig:
    slug = entry.get("slug")
    if not slug:
        raise ConfigurationError(f"Platform entry without a slug: {entry!r}")

    scopes = entry.get("scopes", [])
    if isinstance(scopes, str):
        scopes = scopes.split()

    methods = entry.get("alternative_auth_methods", [])
    if not isinstance(methods, list):
        raise ConfigurationError(f"Platform {slug}: alternative_auth_methods must be a list")
    unknown = [m for m in methods if m not in AUTH_METHODS]
    if unknown:
        logger.warning("Platform %s: unknown auth methods %s will be skipped", slug, unknown)

    return PlatformConfig(
        slug=slug,
        endpoints=list(entry.get("endpoints", [])),
        auth_url=entry.get("auth_url", ""),
        client_id=_env(entry, "client_id"),
        redirect_uri=entry.get("redirect_uri", ""),
        scopes=list(scopes),
        alternative_auth_methods=[str(m) for m in methods],
        probe_path=entry.get("probe_path", DEFAULT_PROBE_PATH),
        api_key=_env(entry, "api_key"),
        app_secret=_env(entry, "app_secret"),
        manual_token=_env(entry, "manual_token"),
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PlatformRegistry:
    """Resolves platform slugs to :class:`PlatformConfig`.

    Never fails for an unknown slug; it gets an empty config whose
    candidates are the generic defaults.
    """

    def __init__(self, configs: Optional[Dict[str, PlatformConfig]] = None) -> None:
        self._configs: Dict[str, PlatformConfig] = dict(configs or {})

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> PlatformRegistry:
        """Load platform configs from JSON. A missing file yields built-ins only."""
        if path is None:
            override = os.getenv("PLATFORM_RESILIENCE_CONFIG")
            path = Path(override) if override else PLATFORMS_CONFIG_PATH

        if not path.exists():
            logger.info("Platform config %s not found, using built-in endpoints", path)
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid platform config {path}: {exc}") from exc

        entries = data.get("platforms", []) if isinstance(data, dict) else data
        configs = {}
        for entry in entries:
            config = _config_from_entry(entry)
            configs[config.slug] = config

        logger.info("Loaded %d platform configs from %s", len(configs), path)
        return cls(configs)

    def get(self, slug: str) -> PlatformConfig:
        config = self._configs.get(slug)
        if config is None:
            if slug not in PLATFORM_ENDPOINTS:
                logger.debug("Unknown platform '%s', using generic endpoints", slug)
            config = PlatformConfig(slug=slug)
        return config

    def register(self, config: PlatformConfig) -> None:
        self._configs[config.slug] = config

    def slugs(self) -> List[str]:
        return sorted(set(self._configs) | set(PLATFORM_ENDPOINTS))


_registry: Optional[PlatformRegistry] = None


def get_platform_registry() -> PlatformRegistry:
    """Return the global PlatformRegistry singleton, loading it on first call."""
    global _registry
    if _registry is None:
        _registry = PlatformRegistry.from_file()
    return _registry
