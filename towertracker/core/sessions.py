import logging
import time
from typing import Callable, Dict, Iterator, List, Optional

from .models import Session, UserSettings

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 3600.0


class SessionStore:
    """In-memory sessions keyed by user id, with idle eviction.

    The store never schedules anything itself; call ``sweep`` from a
    periodic task. ``clock`` returns seconds and is injectable for tests.
    """

    def __init__(
        self,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return str(user_id) in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, user_id) -> Optional[Session]:
        return self._sessions.get(str(user_id))

    def set(self, user_id, session: Session) -> None:
        session.last_activity = self.clock()
        self._sessions[str(user_id)] = session

    def delete(self, user_id) -> Optional[Session]:
        return self._sessions.pop(str(user_id), None)

    def touch(self, session: Session) -> None:
        session.last_activity = self.clock()

    def create(self, user_id, username: str = "", settings: Optional[UserSettings] = None) -> Session:
        session = Session(user_id=str(user_id), username=username, settings=settings or UserSettings())
        session.reset_draft()
        self.set(user_id, session)
        return session

    def get_or_create(self, user_id, username: str = "") -> Session:
        session = self.get(user_id)
        if session is None:
            return self.create(user_id, username)
        if username:
            session.username = username
        self.touch(session)
        return session

    def sweep(self, now: Optional[float] = None) -> List[Session]:
        now = self.clock() if now is None else now
        expired = [
            session
            for session in self._sessions.values()
            if now - session.last_activity > self.idle_timeout
        ]
        for session in expired:
            self._sessions.pop(session.user_id, None)
        if expired:
            logger.info("Evicted %d idle session(s)", len(expired))
        return expired
