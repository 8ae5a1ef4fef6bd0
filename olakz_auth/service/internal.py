from __future__ import annotations

import hmac
from typing import Optional

from olakz_auth.config import Settings
from olakz_auth.logging import get_logger

logger = get_logger(__name__)

INTERNAL_API_KEY_HEADER = "X-Internal-API-Key"


class InternalServiceAuthenticator:
    """Shared-secret gate for service-to-service calls.

    Denials return ``False`` rather than raising; the HTTP dependency turns a
    denial into a 401. Never accept this credential on end-user routes.
    """

    def __init__(self, settings: Settings) -> None:
        self._expected = settings.internal_api_key

    @property
    def is_configured(self) -> bool:
        return bool(self._expected)

    def verify_internal_key(self, provided_key: Optional[str]) -> bool:
        if not self._expected:
            logger.error("internal_api_key_not_configured")
            return False
        if not provided_key:
            logger.warning("internal_api_key_missing")
            return False
        if not hmac.compare_digest(provided_key.encode(), self._expected.encode()):
            logger.warning("internal_api_key_invalid")
            return False
        return True


__all__ = ["INTERNAL_API_KEY_HEADER", "InternalServiceAuthenticator"]
