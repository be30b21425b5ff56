"""Security scheme resolution and credential injection strategies."""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .auth import OAuth2TokenCache
from .config import Settings
from .errors import AuthenticationError
from .models import ANONYMOUS, API_KEY, HTTP_BASIC, HTTP_BEARER, OAUTH2, SecurityRequirement
from .schema import PrimitiveNode, PropertySpec


logger = logging.getLogger(__name__)


@dataclass
class OutgoingRequest:
    """Header, query and cookie sets that strategies and parameters write into."""

    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)


class SecurityStrategy(ABC):
    def __init__(self, requirement: SecurityRequirement) -> None:
        self.requirement = requirement

    @abstractmethod
    def credential_fields(self) -> List[PropertySpec]:
        """Input fields this scheme reads its credentials from."""

    @abstractmethod
    def missing_credentials(self, arguments: Dict[str, Any], settings: Settings) -> List[str]:
        """Names of credential fields that neither the call nor settings supply."""

    @abstractmethod
    async def apply(
        self,
        request: OutgoingRequest,
        arguments: Dict[str, Any],
        settings: Settings,
        token_cache: OAuth2TokenCache,
    ) -> None:
        """Inject credentials into the outgoing request."""

    def _field(self, name: str, label: str) -> PropertySpec:
        return PropertySpec(
            name=name,
            node=PrimitiveNode(
                base_type="string", description=f"{label} for {self.requirement.scheme_name}"
            ),
            required=False,
        )


class ApiKeyStrategy(SecurityStrategy):
    def credential_fields(self) -> List[PropertySpec]:
        return [self._field(self._name, "API Key"), self._field("apiKey", "API Key")]

    @property
    def _name(self) -> str:
        return self.requirement.credential_name or "apiKey"

    def _value(self, arguments: Dict[str, Any], settings: Settings) -> Optional[str]:
        value = arguments.get(self._name)
        if value in (None, ""):
            value = arguments.get("apiKey")
        if value in (None, ""):
            value = settings.api_key_for(self.requirement.scheme_name)
        return None if value in (None, "") else str(value)

    def missing_credentials(self, arguments: Dict[str, Any], settings: Settings) -> List[str]:
        return [] if self._value(arguments, settings) else [self._name]

    async def apply(
        self,
        request: OutgoingRequest,
        arguments: Dict[str, Any],
        settings: Settings,
        token_cache: OAuth2TokenCache,
    ) -> None:
        value = self._value(arguments, settings)
        if value is None:
            raise AuthenticationError(f"Missing API key '{self._name}'")
        location = self.requirement.location or "header"
        if location == "query":
            request.query[self._name] = value
        elif location == "cookie":
            request.cookies[self._name] = value
        else:
            request.headers[self._name] = value


class BearerStrategy(SecurityStrategy):
    def credential_fields(self) -> List[PropertySpec]:
        return [self._field("bearerToken", "Bearer token")]

    def _token(self, arguments: Dict[str, Any], settings: Settings) -> Optional[str]:
        return arguments.get("bearerToken") or settings.openapi_bearer_token

    def missing_credentials(self, arguments: Dict[str, Any], settings: Settings) -> List[str]:
        return [] if self._token(arguments, settings) else ["bearerToken"]

    async def apply(
        self,
        request: OutgoingRequest,
        arguments: Dict[str, Any],
        settings: Settings,
        token_cache: OAuth2TokenCache,
    ) -> None:
        token = self._token(arguments, settings)
        if not token:
            raise AuthenticationError("Missing bearerToken")
        request.headers["Authorization"] = f"Bearer {token}"


class BasicStrategy(SecurityStrategy):
    def credential_fields(self) -> List[PropertySpec]:
        return [self._field("username", "Username"), self._field("password", "Password")]

    def _pair(self, arguments: Dict[str, Any], settings: Settings) -> Tuple[Optional[str], Optional[str]]:
        return (
            arguments.get("username") or settings.openapi_basic_user,
            arguments.get("password") or settings.openapi_basic_pass,
        )

    def missing_credentials(self, arguments: Dict[str, Any], settings: Settings) -> List[str]:
        username, password = self._pair(arguments, settings)
        return [name for name, value in (("username", username), ("password", password)) if not value]

    async def apply(
        self,
        request: OutgoingRequest,
        arguments: Dict[str, Any],
        settings: Settings,
        token_cache: OAuth2TokenCache,
    ) -> None:
        username, password = self._pair(arguments, settings)
        if not username or not password:
            raise AuthenticationError("Missing username/password")
        encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        request.headers["Authorization"] = f"Basic {encoded}"


class OAuth2ClientCredentialsStrategy(SecurityStrategy):
    def credential_fields(self) -> List[PropertySpec]:
        return [self._field("clientId", "OAuth2 client id"), self._field("clientSecret", "OAuth2 client secret")]

    def _pair(self, arguments: Dict[str, Any], settings: Settings) -> Tuple[Optional[str], Optional[str]]:
        return (
            arguments.get("clientId") or settings.openapi_oauth_client_id,
            arguments.get("clientSecret") or settings.openapi_oauth_client_secret,
        )

    def missing_credentials(self, arguments: Dict[str, Any], settings: Settings) -> List[str]:
        client_id, client_secret = self._pair(arguments, settings)
        return [
            name
            for name, value in (("clientId", client_id), ("clientSecret", client_secret))
            if not value
        ]

    async def apply(
        self,
        request: OutgoingRequest,
        arguments: Dict[str, Any],
        settings: Settings,
        token_cache: OAuth2TokenCache,
    ) -> None:
        client_id, client_secret = self._pair(arguments, settings)
        if not client_id or not client_secret or not self.requirement.token_url:
            raise AuthenticationError("Missing clientId/clientSecret")
        token = await token_cache.get_token(
            self.requirement.token_url, client_id, client_secret, self.requirement.scopes
        )
        request.headers["Authorization"] = f"Bearer {token}"


class AnonymousStrategy(SecurityStrategy):
    """Stands for an empty requirement object; sends nothing."""

    def credential_fields(self) -> List[PropertySpec]:
        return []

    def missing_credentials(self, arguments: Dict[str, Any], settings: Settings) -> List[str]:
        return []

    async def apply(
        self,
        request: OutgoingRequest,
        arguments: Dict[str, Any],
        settings: Settings,
        token_cache: OAuth2TokenCache,
    ) -> None:
        return None


_STRATEGIES = {
    API_KEY: ApiKeyStrategy,
    HTTP_BEARER: BearerStrategy,
    HTTP_BASIC: BasicStrategy,
    OAUTH2: OAuth2ClientCredentialsStrategy,
    ANONYMOUS: AnonymousStrategy,
}


def strategy_for(requirement: SecurityRequirement) -> SecurityStrategy:
    try:
        strategy_class = _STRATEGIES[requirement.type]
    except KeyError as exc:
        raise ValueError(f"Unsupported security type: {requirement.type}") from exc
    return strategy_class(requirement)


def resolve_requirements(
    operation: Dict[str, Any], document: Dict[str, Any]
) -> Tuple[SecurityRequirement, ...]:
    """Map an operation's security requirement objects onto SecurityRequirements.

    Each requirement object becomes one group; schemes in a group are applied
    together, and groups are alternatives tried in declared order.
    An empty requirement object becomes a group holding one ANONYMOUS entry.
    """
    declared = operation.get("security")
    if declared is None:
        declared = document.get("security") or []
    schemes = (document.get("components") or {}).get("securitySchemes") or {}

    requirements: List[SecurityRequirement] = []
    for group, requirement_object in enumerate(declared):
        if not requirement_object:
            requirements.append(SecurityRequirement(scheme_name="", type=ANONYMOUS, group=group))
            continue
        for scheme_name, scopes in requirement_object.items():
            scheme = schemes.get(scheme_name)
            if not isinstance(scheme, dict):
                logger.warning("Unknown security scheme referenced: %s", scheme_name)
                continue
            requirement = _requirement_from_scheme(scheme_name, scheme, group, scopes or [])
            if requirement is None:
                logger.warning(
                    "Unsupported security scheme %s (type=%s); skipping",
                    scheme_name,
                    scheme.get("type"),
                )
                continue
            requirements.append(requirement)
    return tuple(requirements)


def _requirement_from_scheme(
    scheme_name: str, scheme: Dict[str, Any], group: int, scopes: List[str]
) -> Optional[SecurityRequirement]:
    scheme_type = scheme.get("type")
    if scheme_type == "apiKey":
        location = scheme.get("in", "header")
        if location not in ("header", "query", "cookie"):
            return None
        return SecurityRequirement(
            scheme_name=scheme_name,
            type=API_KEY,
            group=group,
            location=location,
            credential_name=scheme.get("name") or scheme_name,
        )
    if scheme_type == "http":
        http_scheme = str(scheme.get("scheme", "")).lower()
        if http_scheme == "bearer":
            return SecurityRequirement(scheme_name=scheme_name, type=HTTP_BEARER, group=group)
        if http_scheme == "basic":
            return SecurityRequirement(scheme_name=scheme_name, type=HTTP_BASIC, group=group)
        return None
    if scheme_type == "oauth2":
        flow = (scheme.get("flows") or {}).get("clientCredentials") or {}
        token_url = flow.get("tokenUrl")
        if not token_url:
            return None
        return SecurityRequirement(
            scheme_name=scheme_name,
            type=OAUTH2,
            group=group,
            token_url=token_url,
            scopes=tuple(scopes),
        )
    return None


def select_group(
    strategies: List[SecurityStrategy], arguments: Dict[str, Any], settings: Settings
) -> List[SecurityStrategy]:
    """Pick the first requirement group whose credentials are all available.

    An empty requirement object only wins when no group with credentials can
    be satisfied; the call then goes out unauthenticated.
    """
    if not strategies:
        return []
    groups: Dict[int, List[SecurityStrategy]] = {}
    for strategy in strategies:
        groups.setdefault(strategy.requirement.group, []).append(strategy)

    anonymous_allowed = False
    first_missing: List[str] = []
    for members in groups.values():
        if all(isinstance(strategy, AnonymousStrategy) for strategy in members):
            anonymous_allowed = True
            continue
        missing = [name for strategy in members for name in strategy.missing_credentials(arguments, settings)]
        if not missing:
            return members
        if not first_missing:
            first_missing = missing
    if anonymous_allowed:
        return []
    raise AuthenticationError(f"Missing credentials: {', '.join(first_missing)}")
