"""Ephemeral store of in-flight upload sessions with TTL expiry."""

import threading
import time
from typing import Callable, Dict, List, Optional

from ..core.exceptions import ConflictError
from ..core.logging_config import get_logger
from ..core.models import SessionState, UploadSession


class UploadSessionStore:
    """
    In-memory key-value record of upload sessions.

    Sessions that pass `expires_at` without being finalized are marked
    `expired` by `sweep`; expired sessions are dropped after `grace_seconds`.
    Finalized sessions are kept until the same grace period passes so a
    replayed finalize can still find them.
    """

    def __init__(self, grace_seconds: float = 3600.0, clock: Callable[[], float] = time.time):
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.Lock()
        self._grace_seconds = grace_seconds
        self._clock = clock
        self._logger = get_logger("photo-ingest.sessions")

    def put(self, session: UploadSession) -> None:
        with self._lock:
            if session.upload_id in self._sessions:
                raise ConflictError(f"Upload session {session.upload_id} already exists")
            self._sessions[session.upload_id] = session

    def get(self, upload_id: str) -> Optional[UploadSession]:
        """Return the session, reporting TTL expiry even before the next sweep."""
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                return None
            if session.state == SessionState.PENDING and self._clock() >= session.expires_at:
                return session.model_copy(update={"state": SessionState.EXPIRED})
            return session.model_copy()

    def mark_finalized(self, upload_id: str) -> None:
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is not None:
                self._sessions[upload_id] = session.model_copy(
                    update={"state": SessionState.FINALIZED}
                )

    def sweep(self) -> List[UploadSession]:
        """
        Expire overdue pending sessions and drop old ones.

        Returns the sessions that moved to `expired` during this sweep; their
        raw objects may be orphaned in the store.
        """
        now = self._clock()
        expired: List[UploadSession] = []
        with self._lock:
            for upload_id, session in list(self._sessions.items()):
                if session.state == SessionState.PENDING and now >= session.expires_at:
                    session = session.model_copy(update={"state": SessionState.EXPIRED})
                    self._sessions[upload_id] = session
                    expired.append(session)
                elif (
                    session.state in (SessionState.EXPIRED, SessionState.FINALIZED)
                    and now >= session.expires_at + self._grace_seconds
                ):
                    del self._sessions[upload_id]

        if expired:
            self._logger.info(f"Expired {len(expired)} abandoned upload session(s)")
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
