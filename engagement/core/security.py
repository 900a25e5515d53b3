import base64
import hashlib
import hmac
from collections.abc import Mapping

from fastapi import Depends, Header, HTTPException, status

from engagement.core.auth import ADMIN_SCOPES, SCHEDULER_SCOPES, Principal, PrincipalType, parse_bearer_token
from engagement.core.config import Settings, get_settings


async def get_scheduler_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if x_api_key and settings.admin_api_key and _secrets_match(x_api_key, settings.admin_api_key):
        return Principal(principal_type=PrincipalType.ADMIN, subject="admin", scopes=set(ADMIN_SCOPES))

    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="cron secret is not configured",
        )

    token = parse_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="scheduler auth requires bearer token")
    if not _secrets_match(token, settings.cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid scheduler credentials")

    return Principal(principal_type=PrincipalType.SCHEDULER, subject="scheduler", scopes=set(SCHEDULER_SCOPES))


async def get_admin_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin api key is not configured",
        )
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin auth requires X-API-Key")
    if not _secrets_match(x_api_key, settings.admin_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin credentials")

    return Principal(principal_type=PrincipalType.ADMIN, subject="admin", scopes=set(ADMIN_SCOPES))


def compute_provider_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """Twilio request signature: base64 HMAC-SHA1 over the URL plus sorted name/value pairs."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_provider_signature(
    *,
    url: str,
    params: Mapping[str, str],
    signature: str | None,
    auth_token: str,
) -> bool:
    if not signature:
        return False
    expected = compute_provider_signature(url, params, auth_token)
    return hmac.compare_digest(expected, signature)


def _secrets_match(presented: str, expected: str) -> bool:
    presented_hash = hashlib.sha256(presented.encode("utf-8")).hexdigest()
    expected_hash = hashlib.sha256(expected.encode("utf-8")).hexdigest()
    return hmac.compare_digest(presented_hash, expected_hash)
