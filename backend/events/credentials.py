"""Topic-scoped subscriber credentials.

A subscriber token is an HS256 JWT whose ``subscribe`` claim lists the
exact topics its holder may read. There are no wildcards: a token minted
for ``tasks/abc`` does not open ``tasks/def``.
"""

from datetime import UTC, datetime, timedelta

import jwt
import structlog

logger = structlog.get_logger(__name__)

ALGORITHM = "HS256"


class TopicTokenIssuer:
    """Mints and checks subscriber tokens.

    Attributes:
        secret: HMAC key shared by the issuer and the WebSocket endpoint.
        ttl: Token lifetime.
    """

    def __init__(self, secret: str, ttl_minutes: int = 60) -> None:
        self.secret = secret
        self.ttl = timedelta(minutes=ttl_minutes)

    def issue(self, topics: list[str]) -> str:
        """Return a token allowing subscription to exactly ``topics``."""
        now = datetime.now(UTC)
        payload = {"subscribe": list(topics), "iat": now, "exp": now + self.ttl}
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def allowed_topics(self, token: str) -> list[str]:
        """Topics the token grants, or an empty list for an invalid token."""
        try:
            claims = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            logger.info("topic_token_expired")
            return []
        except jwt.InvalidTokenError as e:
            logger.warning("topic_token_invalid", error=str(e))
            return []
        topics = claims.get("subscribe")
        if not isinstance(topics, list):
            return []
        return [topic for topic in topics if isinstance(topic, str)]

    def can_subscribe(self, token: str, topic: str) -> bool:
        return topic in self.allowed_topics(token)
