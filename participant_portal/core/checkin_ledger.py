import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError

from .clock import Clock, utcnow
from .errors import MalformedInputError, NotFoundError
from .normalizers import is_valid_code, normalize_checkin_code
from ..storage.models import Participant
from ..storage.repository import CheckInRepository, EventRepository, ParticipantRepository

logger = logging.getLogger(__name__)

CHECKIN_METHODS = ("manual", "qr")


def normalize_method(method: Optional[str]) -> str:
    """
    Método de check-in: "manual" ou "qr"; qualquer outro valor vira "manual".
    """
    value = (method or "manual").strip().lower()
    return value if value in CHECKIN_METHODS else "manual"


@dataclass(frozen=True)
class CheckInResult:
    participant_id: int
    full_name: str
    already_arrived: bool
    arrived_count: int
    total_count: int


@dataclass(frozen=True)
class UndoResult:
    participant_id: int
    already_absent: bool
    arrived_count: int
    total_count: int


class CheckInLedger:
    """
    Check-in e desfazer check-in de participantes de um evento.

    - A restrição única (event_id, participant_id) no banco é quem deduplica
    - Contagens são sempre recalculadas a partir do ledger, nunca cacheadas
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        code_length: int = 8,
        clock: Clock = utcnow,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._code_length = code_length
        self._clock = clock

    def _resolve_participant(
        self,
        db: Session,
        organization_id: int,
        event_id: int,
        participant_id: Optional[int],
        code: Optional[str],
    ) -> Participant:
        if EventRepository(db).get_scoped(organization_id, event_id) is None:
            raise NotFoundError("Event not found.")

        participants = ParticipantRepository(db)
        if participant_id is not None:
            participant = participants.get_scoped(organization_id, event_id, participant_id)
        elif code is not None and code.strip():
            normalized = normalize_checkin_code(code)
            if not is_valid_code(normalized, self._code_length):
                raise NotFoundError("Participant not found.")
            participant = participants.find_by_check_in_code(organization_id, event_id, normalized)
        else:
            raise MalformedInputError("Provide either participantId or code.")

        if participant is None:
            raise NotFoundError("Participant not found.")
        return participant

    def _counts(self, db: Session, organization_id: int, event_id: int) -> Tuple[int, int]:
        arrived = CheckInRepository(db).count(organization_id, event_id)
        total = ParticipantRepository(db).count_for_event(organization_id, event_id)
        return arrived, total

    def check_in(
        self,
        organization_id: int,
        event_id: int,
        participant_id: Optional[int] = None,
        code: Optional[str] = None,
        method: Optional[str] = "manual",
    ) -> CheckInResult:
        """
        Marca a chegada. Repetições (novo toque do guia, retry do app)
        retornam already_arrived=True em vez de erro.
        """
        db_session: Session = self._db_session_factory()
        try:
            participant = self._resolve_participant(db_session, organization_id, event_id, participant_id, code)
            check_ins = CheckInRepository(db_session)
            normalized_method = normalize_method(method)

            already_arrived = False
            try:
                check_ins.insert(organization_id, event_id, participant.id, normalized_method, self._clock())
            except IntegrityError:
                # Só é duplicata se a linha realmente existe; outros conflitos sobem
                if not check_ins.exists(organization_id, event_id, participant.id):
                    logger.error(
                        f"Erro de integridade inesperado no check-in: event_id={event_id}, "
                        f"participant_id={participant.id}",
                        exc_info=True,
                    )
                    raise
                already_arrived = True

            arrived, total = self._counts(db_session, organization_id, event_id)
            logger.info(
                f"Check-in: event_id={event_id}, participant_id={participant.id}, "
                f"method={normalized_method}, already_arrived={already_arrived}, "
                f"arrived={arrived}/{total}"
            )
            return CheckInResult(
                participant_id=participant.id,
                full_name=participant.full_name,
                already_arrived=already_arrived,
                arrived_count=arrived,
                total_count=total,
            )
        finally:
            db_session.close()

    def undo(
        self,
        organization_id: int,
        event_id: int,
        participant_id: Optional[int] = None,
        code: Optional[str] = None,
    ) -> UndoResult:
        """
        Desfaz a chegada. Desfazer algo que não existe não é erro (already_absent=True).
        """
        db_session: Session = self._db_session_factory()
        try:
            participant = self._resolve_participant(db_session, organization_id, event_id, participant_id, code)
            removed = CheckInRepository(db_session).delete(organization_id, event_id, participant.id)
            arrived, total = self._counts(db_session, organization_id, event_id)
            logger.info(
                f"Check-in desfeito: event_id={event_id}, participant_id={participant.id}, "
                f"already_absent={not removed}, arrived={arrived}/{total}"
            )
            return UndoResult(
                participant_id=participant.id,
                already_absent=not removed,
                arrived_count=arrived,
                total_count=total,
            )
        finally:
            db_session.close()

    def summary(self, organization_id: int, event_id: int) -> Tuple[int, int]:
        """
        Retorna (chegaram, total) do evento.
        """
        db_session: Session = self._db_session_factory()
        try:
            if EventRepository(db_session).get_scoped(organization_id, event_id) is None:
                raise NotFoundError("Event not found.")
            return self._counts(db_session, organization_id, event_id)
        finally:
            db_session.close()

    def is_arrived(self, organization_id: int, event_id: int, participant_id: int) -> bool:
        db_session: Session = self._db_session_factory()
        try:
            return CheckInRepository(db_session).exists(organization_id, event_id, participant_id)
        finally:
            db_session.close()

    def verify_code(
        self,
        event_id: int,
        code: Optional[str],
        organization_id: Optional[int] = None,
    ) -> Optional[str]:
        """
        Confere se o código pertence a um participante do evento.
        Retorna o código normalizado ou None.

        Com organization_id, só considera participantes dessa organização.
        """
        normalized = normalize_checkin_code(code)
        if not is_valid_code(normalized, self._code_length):
            return None

        db_session: Session = self._db_session_factory()
        try:
            participant = ParticipantRepository(db_session).find_by_check_in_code(organization_id, event_id, normalized)
            return normalized if participant is not None else None
        finally:
            db_session.close()

    def reset_all(self, organization_id: int, event_id: int) -> int:
        """
        Remove todos os check-ins do evento. Retorna quantos foram removidos.
        """
        db_session: Session = self._db_session_factory()
        try:
            if EventRepository(db_session).get_scoped(organization_id, event_id) is None:
                raise NotFoundError("Event not found.")
            removed = CheckInRepository(db_session).delete_all(organization_id, event_id)
        finally:
            db_session.close()
        logger.warning(f"Todos os check-ins removidos: event_id={event_id}, count={removed}")
        return removed
