"""
Auth Fallback — graceful degradation when a platform rejects credentials

On every authentication failure:

    1. Stored credential material for the platform is cleared
       (``<platform>_tokens``, ``<platform>_auth_state``,
       ``<platform>_code_verifier``).  This is unconditional.
    2. If the platform declares alternative_auth_methods, they are tried
       according to the configured AuthFallbackPolicy.
    3. Otherwise a re-authentication URL is built (client_id, redirect_uri,
       scope, response_type=code, fresh state token) and returned with
       ``fallback_available = False``.

Strategies:
    api_key       stores the configured API key   (token_type API_KEY)
    app_secret    stores an app access token "<client_id>|<app_secret>"
    manual_token  stores a pasted access token    (token_type Bearer)

Policies:
    FirstAttemptedPolicy  return the result of the first recognised method,
                          whether or not it authenticated (default)
    ExhaustivePolicy      keep trying until one method authenticates
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from platform_resilience.option_store import OptionStore, option_key
from platform_resilience.platforms import PlatformConfig

logger = logging.getLogger("auth_fallback")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATUS_AUTHENTICATED = "authenticated"
STATUS_AUTH_FAILED = "auth_failed"

REAUTH_MESSAGE = "Authentication failed. Please re-authenticate."

CREDENTIAL_OPTIONS = ("tokens", "auth_state", "code_verifier")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class AuthFallbackResult:
    """Outcome of handling an authentication failure."""

    status: str
    message: str = ""
    method: Optional[str] = None
    token_type: Optional[str] = None
    retry_url: Optional[str] = None
    fallback_available: bool = False
    attempted_methods: List[str] = field(default_factory=list)

    @property
    def authenticated(self) -> bool:
        return self.status == STATUS_AUTHENTICATED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ===================================================================
# STRATEGIES
# ===================================================================

Strategy = Callable[[PlatformConfig, OptionStore], AuthFallbackResult]


def _store_tokens(store: OptionStore, platform: str, access_token: str, token_type: str) -> None:
    store.set(option_key(platform, "tokens"), {
        "access_token": access_token,
        "token_type": token_type,
        "expires": None,
    })


def _not_configured(method: str, what: str) -> AuthFallbackResult:
    return AuthFallbackResult(
        status=STATUS_AUTH_FAILED,
        message=f"{what} not configured",
        method=method,
        fallback_available=True,
    )


def api_key_auth(config: PlatformConfig, store: OptionStore) -> AuthFallbackResult:
    if not config.api_key:
        return _not_configured("api_key", "API key")
    _store_tokens(store, config.slug, config.api_key, "API_KEY")
    return AuthFallbackResult(
        status=STATUS_AUTHENTICATED,
        message="Authenticated with API key",
        method="api_key",
        token_type="API_KEY",
        fallback_available=True,
    )


def app_secret_auth(config: PlatformConfig, store: OptionStore) -> AuthFallbackResult:
    if not config.client_id or not config.app_secret:
        return _not_configured("app_secret", "App ID or app secret")
    _store_tokens(store, config.slug, f"{config.client_id}|{config.app_secret}", "app_token")
    return AuthFallbackResult(
        status=STATUS_AUTHENTICATED,
        message="Authenticated with app access token",
        method="app_secret",
        token_type="app_token",
        fallback_available=True,
    )


def manual_token_auth(config: PlatformConfig, store: OptionStore) -> AuthFallbackResult:
    if not config.manual_token:
        return _not_configured("manual_token", "Manual access token")
    _store_tokens(store, config.slug, config.manual_token, "Bearer")
    return AuthFallbackResult(
        status=STATUS_AUTHENTICATED,
        message="Authenticated with manual access token",
        method="manual_token",
        token_type="Bearer",
        fallback_available=True,
    )


DEFAULT_STRATEGIES: Dict[str, Strategy] = {
    "api_key": api_key_auth,
    "app_secret": app_secret_auth,
    "manual_token": manual_token_auth,
}


# ===================================================================
# POLICIES
# ===================================================================

class AuthFallbackPolicy:
    """Decides how the declared alternative methods are walked."""

    name = "base"

    def run(self, methods: List[str], attempt: Callable[[str], Optional[AuthFallbackResult]]
            ) -> Optional[AuthFallbackResult]:
        raise NotImplementedError


class FirstAttemptedPolicy(AuthFallbackPolicy):
    """Return whatever the first recognised method produced.

    Unrecognised method names are skipped; later methods are not tried even
    when the first attempted one fails.
    """

    name = "first_attempted"

    def run(self, methods, attempt):
        for method in methods:
            result = attempt(method)
            if result is not None:
                return result
        return None


class ExhaustivePolicy(AuthFallbackPolicy):
    """Try methods in order until one authenticates; else the last failure."""

    name = "exhaustive"

    def run(self, methods, attempt):
        last: Optional[AuthFallbackResult] = None
        for method in methods:
            result = attempt(method)
            if result is None:
                continue
            if result.authenticated:
                return result
            last = result
        return last


# ===================================================================
# CONTROLLER
# ===================================================================

class AuthFallbackController:
    """Handles authentication failures for one option store.

    Parameters
    ----------
    store:
        Where credentials and auth state live.
    policy:
        Walk order for alternative methods.  Defaults to FirstAttemptedPolicy.
    strategies:
        Method name -> strategy callable.  Defaults to DEFAULT_STRATEGIES.
    """

    def __init__(
        self,
        store: OptionStore,
        policy: Optional[AuthFallbackPolicy] = None,
        strategies: Optional[Dict[str, Strategy]] = None,
    ) -> None:
        self.store = store
        self.policy = policy or FirstAttemptedPolicy()
        self.strategies = dict(strategies or DEFAULT_STRATEGIES)

    def clear_credentials(self, platform: str) -> None:
        for name in CREDENTIAL_OPTIONS:
            self.store.delete(option_key(platform, name))
        logger.info("Cleared stored credentials for %s", platform)

    def handle_auth_failure(self, config: PlatformConfig,
                            error: Optional[BaseException] = None) -> AuthFallbackResult:
        platform = config.slug
        logger.error("Auth failure for %s: %s", platform, error if error is not None else "unknown")

        self.clear_credentials(platform)

        if config.has_alternative_auth:
            attempted: List[str] = []

            def _attempt(method: str) -> Optional[AuthFallbackResult]:
                strategy = self.strategies.get(method)
                if strategy is None:
                    logger.debug("Skipping unknown auth method '%s' for %s", method, platform)
                    return None
                attempted.append(method)
                try:
                    result = strategy(config, self.store)
                except Exception as exc:
                    logger.warning("Auth method %s for %s raised: %s", method, platform, exc)
                    result = AuthFallbackResult(
                        status=STATUS_AUTH_FAILED,
                        message=str(exc),
                        method=method,
                        fallback_available=True,
                    )
                logger.info("Alternative auth %s for %s: %s", method, platform, result.status)
                return result

            result = self.policy.run(config.alternative_auth_methods, _attempt)
            if result is not None:
                result.attempted_methods = list(attempted)
                return result
            logger.warning("No usable alternative auth method for %s (%s)",
                           platform, ", ".join(config.alternative_auth_methods))

        return AuthFallbackResult(
            status=STATUS_AUTH_FAILED,
            message=REAUTH_MESSAGE,
            retry_url=self.generate_auth_url(config),
            fallback_available=self.has_usable_fallback(config),
        )

    def has_usable_fallback(self, config: PlatformConfig) -> bool:
        return any(m in self.strategies for m in config.alternative_auth_methods)

    def generate_auth_url(self, config: PlatformConfig) -> Optional[str]:
        """Build a fresh authorization URL, storing its state token."""
        if not config.auth_url:
            return None

        state = str(uuid.uuid4())
        self.store.set(option_key(config.slug, "auth_state"), state)

        params = urlencode({
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(config.scopes),
            "response_type": "code",
            "state": state,
        })
        parts = urlsplit(config.auth_url)
        query = f"{parts.query}&{params}" if parts.query else params
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
