"""Single-use OAuth state for integration handshakes.

The state token itself is self-contained and signed by the credential vault.
A Redis marker keyed by the token's SHA-256 digest makes it single-use:
consume validates signature and age first, then atomically GET+DELETEs
the marker so a replayed token is rejected.
"""

import hashlib
import json

from machina.config import settings
from machina.logging_config import get_logger
from machina.redis.client import get_redis_client
from machina.services.credential_vault import CredentialVault, get_vault

logger = get_logger(__name__)

OAUTH_STATE_PREFIX = "mc:oauth_state:"


def _marker_key(token: str) -> str:
    return OAUTH_STATE_PREFIX + hashlib.sha256(token.encode()).hexdigest()


async def issue_oauth_state(
    team_id: str, user_id: str, vault: CredentialVault | None = None
) -> str:
    """Generate a signed state token and record it as unused."""
    vault = vault or get_vault()
    token = vault.generate_oauth_state(team_id, user_id)

    redis = get_redis_client()
    await redis.set(
        _marker_key(token),
        json.dumps({"team_id": team_id, "user_id": user_id}),
        ex=settings.oauth.state_max_age_seconds,
    )
    logger.debug("Issued OAuth state", team_id=team_id, user_id=user_id)
    return token


async def consume_oauth_state(
    token: str, vault: CredentialVault | None = None
) -> dict[str, str] | None:
    """Validate and invalidate a state token. Returns {team_id, user_id} or None."""
    vault = vault or get_vault()
    identity = vault.validate_oauth_state(
        token, max_age_ms=settings.oauth.state_max_age_seconds * 1000
    )
    if identity is None:
        logger.warning("Rejected OAuth state: invalid signature or expired")
        return None

    redis = get_redis_client()
    key = _marker_key(token)

    # Atomic get-and-delete via pipeline
    async with redis.pipeline(transaction=True) as pipe:
        pipe.get(key)
        pipe.delete(key)
        results = await pipe.execute()

    if results[0] is None:
        logger.warning("Rejected OAuth state: already used or unknown", team_id=identity["team_id"])
        return None

    return identity
