"""API key guard for the job status endpoint."""

import hmac
import logging
import os
from typing import List, Optional

import azure.functions as func

from integrations.errors import AuthenticationError


API_KEY_ENV_VARS = ("COMPRESS_API_KEY_DEV", "COMPRESS_API_KEY_PROD")


def configured_api_keys() -> List[str]:
    """Keys accepted by ``check_api_key``; an empty list turns the check off."""
    return [key for key in (os.environ.get(name, "") for name in API_KEY_ENV_VARS) if key]


def presented_api_key(req: func.HttpRequest) -> Optional[str]:
    """Key sent as ``X-Api-Key`` or ``Authorization: Bearer <key>``."""
    api_key = req.headers.get("X-Api-Key")
    if api_key:
        return api_key.strip()

    authorization = req.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def check_api_key(req: func.HttpRequest) -> None:
    """Raise AuthenticationError unless the request carries a configured key."""
    valid_keys = configured_api_keys()
    if not valid_keys:
        logging.debug("No API keys configured; status endpoint is open")
        return

    api_key = presented_api_key(req)
    if api_key is None:
        raise AuthenticationError("Missing API key. Provide X-Api-Key or Authorization: Bearer <key>")

    if not any(hmac.compare_digest(api_key.encode(), key.encode()) for key in valid_keys):
        logging.warning("Rejected status request with an unknown API key")
        raise AuthenticationError("Invalid API key")
