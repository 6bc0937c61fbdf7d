import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError

from .clock import Clock, utcnow
from .errors import NotFoundError, TokenParseError
from .secret_token import issue_token, parse_token, serialize_token, verify_secret
from ..storage.models import Participant, ParticipantAccessToken
from ..storage.repository import AccessTokenRepository, ParticipantRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedAccessToken:
    """
    Resultado da emissão. `token` é a única vez que o segredo aparece em claro.
    """
    token: str
    token_id: str
    version: int
    created_at: datetime


class AccessTokenIssuer:
    """
    Emite, resolve e revoga tokens de acesso versionados do participante.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        clock: Clock = utcnow,
        max_version_retries: int = 3,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._clock = clock
        self._max_version_retries = max_version_retries

    def stage(self, db: Session, participant: Participant, now: datetime) -> IssuedAccessToken:
        """
        Adiciona um novo token à transação corrente sem fazer commit.

        Duas emissões concorrentes calculam a mesma versão; a restrição
        única (participant_id, version) rejeita uma delas no commit.
        """
        repo = AccessTokenRepository(db)
        version = repo.max_version(participant.id) + 1
        issued = issue_token()
        repo.add(
            ParticipantAccessToken(
                id=issued.token_id,
                organization_id=participant.organization_id,
                participant_id=participant.id,
                version=version,
                secret_hash=issued.secret_hash,
                created_at=now,
                revoked_at=None,
            ),
            commit=False,
        )
        return IssuedAccessToken(
            token=serialize_token(issued.token_id, issued.secret),
            token_id=issued.token_id,
            version=version,
            created_at=now,
        )

    def issue_for(self, participant: Participant) -> IssuedAccessToken:
        """
        Emite um novo token com versão = maior versão existente + 1 (começando em 1).
        """
        for attempt in range(1, self._max_version_retries + 1):
            db_session: Session = self._db_session_factory()
            try:
                issued = self.stage(db_session, participant, self._clock())
                db_session.commit()
                logger.info(
                    f"Token de acesso emitido: participant_id={participant.id}, version={issued.version}"
                )
                return issued
            except IntegrityError:
                db_session.rollback()
                logger.warning(
                    f"Conflito de versão ao emitir token: participant_id={participant.id}, "
                    f"attempt={attempt}"
                )
                if attempt == self._max_version_retries:
                    raise
            finally:
                db_session.close()

    def resolve(self, serialized_token: Optional[str]) -> Participant:
        """
        Resolve o participante dono do token.

        Falha de parse, token inexistente/revogado e segredo incorreto
        viram o mesmo NotFoundError; o motivo real fica só no log.
        """
        try:
            parsed = parse_token(serialized_token)
        except TokenParseError as e:
            logger.debug(f"Token de acesso rejeitado: reason=parse, detail={e}")
            raise NotFoundError("Access token not found.")

        db_session: Session = self._db_session_factory()
        try:
            access = AccessTokenRepository(db_session).get_active(parsed.token_id)
            if access is None:
                logger.debug("Token de acesso rejeitado: reason=unknown_or_revoked")
                raise NotFoundError("Access token not found.")

            if not verify_secret(parsed.secret, access.secret_hash):
                logger.debug(f"Token de acesso rejeitado: reason=secret_mismatch, participant_id={access.participant_id}")
                raise NotFoundError("Access token not found.")

            participant = ParticipantRepository(db_session).get(access.participant_id)
            if participant is None:
                logger.debug(f"Token de acesso rejeitado: reason=participant_missing, participant_id={access.participant_id}")
                raise NotFoundError("Access token not found.")
            return participant
        finally:
            db_session.close()

    def revoke_all(self, participant_id: int) -> int:
        """
        Revoga todos os tokens ativos. Idempotente: a segunda chamada retorna 0.
        """
        db_session: Session = self._db_session_factory()
        try:
            revoked = AccessTokenRepository(db_session).revoke_all(participant_id, self._clock())
        finally:
            db_session.close()
        logger.info(f"Tokens de acesso revogados: participant_id={participant_id}, count={revoked}")
        return revoked

    def active_version(self, participant_id: int) -> Optional[int]:
        db_session: Session = self._db_session_factory()
        try:
            return AccessTokenRepository(db_session).active_version(participant_id)
        finally:
            db_session.close()
