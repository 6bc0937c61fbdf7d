import logging
from typing import Optional
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import IntegrityError

from .code_generator import DEFAULT_MAX_ATTEMPTS
from .errors import ConflictError, MalformedInputError, NotFoundError
from .normalizers import IDENTITY_NUMBER_LENGTH, mask_identifier, normalize_identity_number
from ..storage.models import Event, Organization, Participant
from ..storage.repository import EventRepository, OrganizationRepository, ParticipantRepository

logger = logging.getLogger(__name__)


class EventRegistry:
    """
    Cadastro de organizações, eventos e participantes.

    Os códigos (acesso do evento, check-in do participante) são gerados aqui
    com o tamanho configurado; a restrição única do banco é a garantia final.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        checkin_code_length: int = 8,
        event_access_code_length: int = 8,
        code_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        portal_max_attempts: int = 5,
        portal_lock_minutes: int = 10,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._checkin_code_length = checkin_code_length
        self._event_access_code_length = event_access_code_length
        self._code_max_attempts = code_max_attempts
        self._portal_max_attempts = portal_max_attempts
        self._portal_lock_minutes = portal_lock_minutes

    def create_organization(self, name: str, slug: str, **policy) -> Organization:
        """
        Cria a organização. Limites de bloqueio não informados usam
        os padrões configurados da instalação.
        """
        policy.setdefault("portal_max_attempts", self._portal_max_attempts)
        policy.setdefault("portal_lock_minutes", self._portal_lock_minutes)

        db_session: Session = self._db_session_factory()
        try:
            return OrganizationRepository(db_session).create_organization(name=name, slug=slug, **policy)
        except IntegrityError:
            raise ConflictError(f"Organization slug already in use: {slug}")
        finally:
            db_session.close()

    def create_event(
        self,
        organization_id: int,
        name: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Event:
        db_session: Session = self._db_session_factory()
        try:
            if OrganizationRepository(db_session).get(organization_id) is None:
                raise NotFoundError("Organization not found.")
            event = EventRepository(db_session).create_event(
                organization_id=organization_id,
                name=name,
                start_date=start_date,
                end_date=end_date,
                access_code_length=self._event_access_code_length,
                max_attempts=self._code_max_attempts,
            )
        finally:
            db_session.close()

        logger.info(f"Evento cadastrado: event_id={event.id}, organization_id={organization_id}")
        return event

    def register_participant(
        self,
        organization_id: int,
        event_id: int,
        full_name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        identity_number: Optional[str] = None,
    ) -> Participant:
        """
        Cadastra o participante no evento.

        O documento, quando informado, precisa ter 11 dígitos e não pode
        se repetir no mesmo evento (senão o login por documento fica ambíguo).
        """
        if not full_name or not full_name.strip():
            raise MalformedInputError("Full name is required.")

        normalized_identity = None
        if identity_number is not None and identity_number.strip():
            normalized_identity = normalize_identity_number(identity_number)
            if len(normalized_identity) != IDENTITY_NUMBER_LENGTH:
                raise MalformedInputError("Identity number must have 11 digits.")

        db_session: Session = self._db_session_factory()
        try:
            if EventRepository(db_session).get_scoped(organization_id, event_id) is None:
                raise NotFoundError("Event not found.")

            repo = ParticipantRepository(db_session)
            if normalized_identity and repo.find_by_identity(organization_id, event_id, normalized_identity):
                logger.warning(
                    f"Documento já cadastrado no evento: event_id={event_id}, "
                    f"identity={mask_identifier(normalized_identity)}"
                )
                raise ConflictError("Identity number already registered for this event.")

            participant = repo.create_participant(
                organization_id=organization_id,
                event_id=event_id,
                full_name=full_name.strip(),
                phone=phone,
                email=email,
                identity_number=normalized_identity,
                check_in_code_length=self._checkin_code_length,
                max_attempts=self._code_max_attempts,
            )
        finally:
            db_session.close()

        logger.info(f"Participante cadastrado: participant_id={participant.id}, event_id={event_id}")
        return participant
