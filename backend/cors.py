from dataclasses import dataclass
from typing import Dict, Optional, Tuple

WILDCARD = "*"

PRODUCTION_METHODS = ("GET", "POST", "PUT", "DELETE")
PRODUCTION_HEADERS = ("Content-Type", "Authorization")
DEVELOPMENT_METHODS = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
DEVELOPMENT_HEADERS = ("Content-Type", "Authorization", "X-Requested-With")


@dataclass(frozen=True)
class CorsPolicy:
    """Cross-origin policy, chosen once at startup from the environment."""

    allowed_origin: str
    allowed_methods: Tuple[str, ...]
    allowed_headers: Tuple[str, ...]
    allow_credentials: bool = True

    @classmethod
    def for_settings(cls, settings) -> "CorsPolicy":
        if settings.is_production:
            return cls(
                allowed_origin=settings.frontend_url.rstrip("/"),
                allowed_methods=PRODUCTION_METHODS,
                allowed_headers=PRODUCTION_HEADERS,
            )
        return cls(
            allowed_origin=WILDCARD,
            allowed_methods=DEVELOPMENT_METHODS,
            allowed_headers=DEVELOPMENT_HEADERS,
        )

    @property
    def is_wildcard(self) -> bool:
        return self.allowed_origin == WILDCARD

    def origin_for(self, request_origin: Optional[str]) -> Optional[str]:
        """Value for Access-Control-Allow-Origin, or None when the origin is refused."""
        if self.is_wildcard:
            return request_origin or WILDCARD
        if request_origin and self.allowed_origin and request_origin == self.allowed_origin:
            return request_origin
        return None

    def preflight_headers(self, request_origin: Optional[str]) -> Dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": ", ".join(self.allowed_methods),
            "Access-Control-Allow-Headers": ", ".join(self.allowed_headers),
        }
        origin = self.origin_for(request_origin)
        if origin:
            headers["Access-Control-Allow-Origin"] = origin
            if self.allow_credentials:
                headers["Access-Control-Allow-Credentials"] = "true"
            headers["Vary"] = "Origin"
        return headers

    def flask_cors_options(self) -> Dict[str, object]:
        return {
            "origins": WILDCARD if self.is_wildcard else [self.allowed_origin],
            "supports_credentials": self.allow_credentials,
            "methods": list(self.allowed_methods),
            "allow_headers": list(self.allowed_headers),
        }
