import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session, sessionmaker

from .clock import Clock, utcnow
from .errors import UnauthorizedError
from .secret_token import generate_handle, hash_secret
from ..storage.models import Participant, PortalSession
from ..storage.repository import ParticipantRepository, PortalSessionRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionGrant:
    handle: str
    expires_at: datetime


class SessionManager:
    """
    Sessões do portal com validade fixa a partir da criação (sem renovação).

    Só o hash do handle é gravado; a busca é sempre pelo hash.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        ttl_seconds: int = 24 * 3600,
        clock: Clock = utcnow,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def create_session(self, participant: Participant, ttl: Optional[timedelta] = None) -> SessionGrant:
        """
        Cria a sessão e retorna o handle em claro uma única vez.
        """
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self._ttl)
        handle = generate_handle()

        db_session: Session = self._db_session_factory()
        try:
            PortalSessionRepository(db_session).add(
                PortalSession(
                    organization_id=participant.organization_id,
                    event_id=participant.event_id,
                    participant_id=participant.id,
                    token_hash=hash_secret(handle),
                    created_at=now,
                    expires_at=expires_at,
                )
            )
        finally:
            db_session.close()

        logger.info(f"Sessão do portal criada: participant_id={participant.id}, expires_at={expires_at.isoformat()}")
        return SessionGrant(handle=handle, expires_at=expires_at)

    def validate(self, handle: Optional[str]) -> Participant:
        """
        Retorna o participante da sessão. Sessão expirada é tratada
        como inexistente e removida na hora.
        """
        if not handle or not isinstance(handle, str) or not handle.strip():
            raise UnauthorizedError("Session required.")

        now = self._clock()
        db_session: Session = self._db_session_factory()
        try:
            repo = PortalSessionRepository(db_session)
            session = repo.get_by_hash(hash_secret(handle.strip()))
            if session is None:
                raise UnauthorizedError("Invalid session.")

            if session.expires_at <= now:
                logger.debug(f"Sessão expirada removida: participant_id={session.participant_id}")
                repo.delete(session)
                raise UnauthorizedError("Invalid session.")

            participant = ParticipantRepository(db_session).get(session.participant_id)
            if participant is None:
                raise UnauthorizedError("Invalid session.")
            return participant
        finally:
            db_session.close()

    def invalidate_all(self, participant_id: int) -> int:
        db_session: Session = self._db_session_factory()
        try:
            removed = PortalSessionRepository(db_session).delete_for_participant(participant_id)
        finally:
            db_session.close()
        logger.info(f"Sessões do portal removidas: participant_id={participant_id}, count={removed}")
        return removed
