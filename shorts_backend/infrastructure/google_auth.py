"""
Build google-auth credentials from the token bag kept in a user session.
"""
from datetime import datetime, timezone
from typing import Optional

from google.oauth2.credentials import Credentials

from shorts_backend.config import Settings, get_settings
from shorts_backend.domain.errors import ConfigurationError, InvalidInputError
from shorts_backend.domain.models import OAuthTokens


def validate_client_config(settings: Settings) -> None:
    missing = [
        name
        for name in ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET")
        if not getattr(settings, name)
    ]
    if missing:
        raise ConfigurationError(
            f"Missing required Google OAuth environment variables: {', '.join(missing)}"
        )


def build_credentials(tokens: OAuthTokens, settings: Optional[Settings] = None) -> Credentials:
    settings = settings or get_settings()
    validate_client_config(settings)
    if not tokens.access_token:
        raise InvalidInputError("Access token is required to call Google APIs")

    expiry = None
    if tokens.expiry_date:
        # google-auth compares expiry against naive UTC
        expiry = datetime.fromtimestamp(tokens.expiry_date / 1000, tz=timezone.utc).replace(tzinfo=None)

    return Credentials(
        token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        id_token=tokens.id_token,
        token_uri=settings.GOOGLE_TOKEN_URI,
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        scopes=tokens.scope.split() if tokens.scope else None,
        expiry=expiry,
    )


def tokens_from_credentials(credentials: Credentials, previous: OAuthTokens) -> OAuthTokens:
    """Read back what the client may have refreshed, keeping old values where nothing changed."""
    expiry_date = previous.expiry_date
    if credentials.expiry is not None:
        expiry = credentials.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        expiry_date = int(expiry.timestamp() * 1000)

    scopes = credentials.scopes
    return OAuthTokens(
        access_token=credentials.token or previous.access_token,
        refresh_token=credentials.refresh_token or previous.refresh_token,
        scope=" ".join(scopes) if scopes else previous.scope,
        token_type=previous.token_type or "Bearer",
        expiry_date=expiry_date,
        id_token=credentials.id_token or previous.id_token,
    )
