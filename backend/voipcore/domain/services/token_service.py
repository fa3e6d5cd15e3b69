"""
Voice Token Service
Issues signed Twilio Access Tokens for browser softphone registration
"""
import logging
import re
from typing import Optional

from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600

_UNSAFE_IDENTITY = re.compile(r"[^A-Za-z0-9_\-.@]")


class TokenConfigurationError(Exception):
    """Raised when Twilio API key credentials are not configured."""
    def __init__(self, missing: str):
        self.message = f"Voice tokens require {missing} to be set"
        super().__init__(self.message)


def build_identity(tenant_id: str, user_id: str) -> str:
    """Client identity scoped to the tenant: '{tenant_id}_{user_id}'."""
    return _UNSAFE_IDENTITY.sub("_", f"{tenant_id}_{user_id}")


class VoiceTokenService:
    """
    Signs Access Tokens with a Twilio API key.

    The grant lets the device receive calls for its identity and place calls
    through the configured TwiML application.
    """

    def __init__(
        self,
        account_sid: Optional[str],
        api_key_sid: Optional[str],
        api_key_secret: Optional[str],
        twiml_app_sid: Optional[str],
        default_ttl: int = DEFAULT_TTL_SECONDS
    ):
        self._account_sid = account_sid
        self._api_key_sid = api_key_sid
        self._api_key_secret = api_key_secret
        self._twiml_app_sid = twiml_app_sid
        self._default_ttl = default_ttl

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    def _require(self) -> None:
        for name, value in (
            ("TWILIO_ACCOUNT_SID", self._account_sid),
            ("TWILIO_API_KEY_SID", self._api_key_sid),
            ("TWILIO_API_KEY_SECRET", self._api_key_secret),
            ("TWILIO_TWIML_APP_SID", self._twiml_app_sid),
        ):
            if not value:
                raise TokenConfigurationError(name)

    def create_token(self, identity: str, ttl: Optional[int] = None) -> str:
        """
        Returns:
            Signed JWT string

        Raises:
            TokenConfigurationError: Missing Twilio credentials
        """
        self._require()
        ttl = ttl or self._default_ttl

        token = AccessToken(
            self._account_sid,
            self._api_key_sid,
            self._api_key_secret,
            identity=identity,
            ttl=ttl,
        )
        token.add_grant(VoiceGrant(
            outgoing_application_sid=self._twiml_app_sid,
            incoming_allow=True,
        ))

        jwt = token.to_jwt()
        logger.info(f"Issued voice token for {identity} (ttl={ttl}s)")
        return jwt.decode("utf-8") if isinstance(jwt, bytes) else str(jwt)
