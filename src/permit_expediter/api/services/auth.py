"""Service for bearer-token sessions scoped to a tenant."""

import json
import logging
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Session timeout in hours
SESSION_TIMEOUT_HOURS = 8


@dataclass
class Session:
    """Session record.

    ``tenant_id`` is None for users without tenant access; such sessions
    authenticate but are refused by tenant-scoped endpoints.
    """

    token: str
    user_id: str
    tenant_id: Optional[str]
    created_at: str
    expires_at: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(ts: str) -> datetime:
    parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AuthService:
    """Session store backed by ``sessions.json`` in the config directory."""

    def __init__(self, config_dir: Path):
        """
        Initialize the auth service.

        Args:
            config_dir: Directory holding sessions.json (e.g., workspace/config/)
        """
        self.config_dir = config_dir
        self.sessions_file = config_dir / "sessions.json"

    def _load_all(self) -> dict[str, Session]:
        """Load all sessions from disk."""
        if not self.sessions_file.exists():
            return {}

        try:
            with open(self.sessions_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            return {token: Session(token=token, **{k: v for k, v in s.items() if k != "token"})
                    for token, s in data.items()}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Failed to load sessions: {e}")
            return {}

    def _save_all(self, sessions: dict[str, Session]) -> None:
        """Save all sessions to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.sessions_file, "w", encoding="utf-8") as f:
            json.dump(
                {token: asdict(session) for token, session in sessions.items()},
                f,
                indent=2,
            )

    def _cleanup_expired(self, sessions: dict[str, Session]) -> dict[str, Session]:
        """Remove expired sessions."""
        now = _now()
        return {t: s for t, s in sessions.items() if _parse(s.expires_at) > now}

    def create_session(
        self,
        user_id: str,
        tenant_id: Optional[str],
        timeout_hours: int = SESSION_TIMEOUT_HOURS,
    ) -> Session:
        """Issue a new session token for a user."""
        now = _now()
        session = Session(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now.isoformat().replace("+00:00", "Z"),
            expires_at=(now + timedelta(hours=timeout_hours)).isoformat().replace("+00:00", "Z"),
        )

        sessions = self._cleanup_expired(self._load_all())
        sessions[session.token] = session
        self._save_all(sessions)

        logger.info(f"Session created for user {user_id} (tenant {tenant_id})")
        return session

    def validate_session(self, token: str) -> Optional[Session]:
        """
        Validate a session token.

        Returns:
            Session on success, None if the token is unknown or expired.
        """
        session = self._load_all().get(token)
        if not session:
            return None
        if _parse(session.expires_at) <= _now():
            return None
        return session

    def revoke_session(self, token: str) -> bool:
        """Delete a session. Returns True if it existed."""
        sessions = self._load_all()
        if token not in sessions:
            return False
        del sessions[token]
        self._save_all(sessions)
        return True
