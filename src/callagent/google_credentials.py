"""Google OAuth application credentials.

The client id/secret pair identifies this application to Google's token
endpoint. It comes from the ``[google]`` config section or, when that is
absent, from the ``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET`` environment
variables.

Per-user access and refresh tokens are a different concern and live in
:mod:`callagent.credential_store`.

Secret material (client_secret) is never logged in plaintext.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

ENV_CLIENT_ID = "GOOGLE_CLIENT_ID"
ENV_CLIENT_SECRET = "GOOGLE_CLIENT_SECRET"

# ---------------------------------------------------------------------------
# Credential model
# ---------------------------------------------------------------------------


class GoogleAppCredentials(BaseModel):
    """OAuth client registration used to refresh user tokens."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return f"GoogleAppCredentials(client_id={self.client_id!r}, client_secret=<REDACTED>)"

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class MissingGoogleCredentialsError(Exception):
    """Raised when Google app credentials cannot be resolved.

    The error message is safe to log: it names the missing fields but
    never includes secret values.
    """


class InvalidGoogleCredentialsError(Exception):
    """Raised when configured credential data is malformed.

    The error message is safe to log.
    """


def load_google_app_credentials(
    raw: Mapping[str, object] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> GoogleAppCredentials:
    """Resolve the app credentials from a config table, falling back to env vars.

    Parameters
    ----------
    raw:
        The ``[google]`` config table, if present.
    env:
        Environment mapping; defaults to ``os.environ``.

    Raises
    ------
    MissingGoogleCredentialsError
        If either value is absent from both sources.
    InvalidGoogleCredentialsError
        If the values fail validation.
    """
    source = dict(raw or {})
    environ = os.environ if env is None else env
    source.setdefault("client_id", environ.get(ENV_CLIENT_ID))
    source.setdefault("client_secret", environ.get(ENV_CLIENT_SECRET))

    missing = [name for name in ("client_id", "client_secret") if not source.get(name)]
    if missing:
        raise MissingGoogleCredentialsError(
            "Google app credentials are missing: "
            + ", ".join(missing)
            + f" (set [google] in the config or {ENV_CLIENT_ID}/{ENV_CLIENT_SECRET})"
        )

    try:
        creds = GoogleAppCredentials.model_validate(source)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise InvalidGoogleCredentialsError(
            f"Google app credentials are invalid: {', '.join(fields)}"
        ) from exc

    logger.debug("Loaded Google app credentials for client %s", creds.client_id)
    return creds
