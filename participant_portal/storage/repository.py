import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from .models import (
    CheckIn,
    Event,
    Organization,
    Participant,
    ParticipantAccessToken,
    PortalSession,
)
from ..core.code_generator import DEFAULT_MAX_ATTEMPTS, generate_unique_code

logger = logging.getLogger(__name__)


def _commit_or_rollback(db: Session, action: str) -> None:
    """
    Commit com o mesmo tratamento de erro em todos os repositórios:
    loga, faz rollback e relança.
    """
    try:
        db.commit()
    except IntegrityError as e:
        logger.error(
            f"Erro de integridade ao {action}: error={type(e).__name__}: {e}",
            exc_info=True,
        )
        db.rollback()
        raise
    except SQLAlchemyError as e:
        logger.error(
            f"Erro de banco de dados ao {action}: error={type(e).__name__}: {e}",
            exc_info=True,
        )
        db.rollback()
        raise


class OrganizationRepository:
    """
    Repositório de organizações (tenants).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def create_organization(
        self,
        name: str,
        slug: str,
        require_factor_for_token: bool = True,
        require_factor_for_login: bool = False,
        portal_max_attempts: int = 5,
        portal_lock_minutes: int = 10,
    ) -> Organization:
        organization = Organization(
            name=name,
            slug=slug,
            require_factor_for_token=require_factor_for_token,
            require_factor_for_login=require_factor_for_login,
            portal_max_attempts=portal_max_attempts,
            portal_lock_minutes=portal_lock_minutes,
        )
        self._db.add(organization)
        _commit_or_rollback(self._db, f"criar organização slug={slug}")
        self._db.refresh(organization)
        logger.debug(f"Organização criada: id={organization.id}, slug={slug}")
        return organization

    def get(self, organization_id: int) -> Optional[Organization]:
        return self._db.get(Organization, organization_id)


class EventRepository:
    """
    Repositório de eventos.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def access_code_exists(self, code: str) -> bool:
        stmt = select(Event.id).where(Event.access_code == code).limit(1)
        return self._db.execute(stmt).first() is not None

    def create_event(
        self,
        organization_id: int,
        name: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        access_code_length: int = 8,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> Event:
        """
        Cria um evento com código de acesso único.
        """
        access_code = generate_unique_code(access_code_length, self.access_code_exists, max_attempts)
        event = Event(
            organization_id=organization_id,
            name=name,
            access_code=access_code,
            start_date=start_date,
            end_date=end_date,
        )
        self._db.add(event)
        _commit_or_rollback(self._db, f"criar evento organization_id={organization_id}")
        self._db.refresh(event)
        logger.debug(f"Evento criado: id={event.id}, organization_id={organization_id}")
        return event

    def get(self, event_id: int) -> Optional[Event]:
        return self._db.get(Event, event_id)

    def get_scoped(self, organization_id: int, event_id: int) -> Optional[Event]:
        stmt = select(Event).where(Event.id == event_id, Event.organization_id == organization_id)
        return self._db.execute(stmt).scalar_one_or_none()

    def find_by_access_code(self, access_code: str) -> List[Event]:
        stmt = select(Event).where(Event.access_code == access_code)
        return list(self._db.execute(stmt).scalars())


class ParticipantRepository:
    """
    Repositório para operações de persistência de participantes.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def check_in_code_exists(self, code: str) -> bool:
        stmt = select(Participant.id).where(Participant.check_in_code == code).limit(1)
        return self._db.execute(stmt).first() is not None

    def create_participant(
        self,
        organization_id: int,
        event_id: int,
        full_name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        identity_number: Optional[str] = None,
        check_in_code_length: int = 8,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> Participant:
        """
        Cria um novo participante com código de check-in único.

        A restrição única da coluna é a garantia final; uma colisão
        entre a verificação e o insert sobe como IntegrityError.
        """
        code = generate_unique_code(check_in_code_length, self.check_in_code_exists, max_attempts)
        participant = Participant(
            organization_id=organization_id,
            event_id=event_id,
            full_name=full_name,
            phone=phone,
            email=email,
            identity_number=identity_number,
            check_in_code=code,
            portal_failed_attempts=0,
        )
        self._db.add(participant)
        _commit_or_rollback(self._db, f"criar participante event_id={event_id}")
        self._db.refresh(participant)

        # ASSERT: garantir que o participante foi persistido com ID
        assert participant.id is not None, (
            "Participant persisted without id! "
            "This indicates a persistence error."
        )

        logger.debug(f"Participante criado com sucesso: id={participant.id}, event_id={event_id}")
        return participant

    def get(self, participant_id: int) -> Optional[Participant]:
        return self._db.get(Participant, participant_id)

    def reload(self, participant_id: int) -> Optional[Participant]:
        """Lê a linha mais recente do banco, ignorando o estado em memória da sessão."""
        stmt = (
            select(Participant)
            .where(Participant.id == participant_id)
            .execution_options(populate_existing=True)
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def get_scoped(self, organization_id: int, event_id: int, participant_id: int) -> Optional[Participant]:
        stmt = select(Participant).where(
            Participant.id == participant_id,
            Participant.event_id == event_id,
            Participant.organization_id == organization_id,
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def find_by_check_in_code(self, organization_id: Optional[int], event_id: int, code: str) -> Optional[Participant]:
        stmt = select(Participant).where(Participant.event_id == event_id, Participant.check_in_code == code)
        if organization_id is not None:
            stmt = stmt.where(Participant.organization_id == organization_id)
        return self._db.execute(stmt).scalar_one_or_none()

    def find_by_identity(self, organization_id: int, event_id: int, identity_number: str) -> List[Participant]:
        stmt = select(Participant).where(
            Participant.event_id == event_id,
            Participant.organization_id == organization_id,
            Participant.identity_number == identity_number,
        )
        return list(self._db.execute(stmt).scalars())

    def count_for_event(self, organization_id: int, event_id: int) -> int:
        stmt = select(func.count(Participant.id)).where(
            Participant.event_id == event_id,
            Participant.organization_id == organization_id,
        )
        return int(self._db.execute(stmt).scalar_one())

    # --- contadores de bloqueio (usados só pelo LockoutManager) ---

    def increment_failure(self, participant_id: int, now: datetime, commit: bool = True) -> None:
        """
        Incremento atômico no banco (SET n = n + 1), sem ler-modificar-gravar em Python.
        """
        stmt = (
            update(Participant)
            .where(Participant.id == participant_id)
            .values(
                portal_failed_attempts=Participant.portal_failed_attempts + 1,
                portal_last_failed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self._db.execute(stmt)
        if commit:
            _commit_or_rollback(self._db, f"registrar falha participant_id={participant_id}")

    def lock_if_threshold_reached(
        self,
        participant_id: int,
        max_attempts: int,
        locked_until: datetime,
        now: datetime,
        commit: bool = True,
    ) -> bool:
        """
        Aplica o bloqueio se o contador atingiu o limite e não há bloqueio ativo.

        Retorna True se esta chamada fez a transição para bloqueado.
        """
        stmt = (
            update(Participant)
            .where(
                Participant.id == participant_id,
                Participant.portal_failed_attempts >= max_attempts,
                or_(Participant.portal_locked_until.is_(None), Participant.portal_locked_until <= now),
            )
            .values(portal_locked_until=locked_until)
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(stmt)
        if commit:
            _commit_or_rollback(self._db, f"aplicar bloqueio participant_id={participant_id}")
        return (result.rowcount or 0) > 0

    def clear_failures(self, participant_id: int, commit: bool = True) -> None:
        stmt = (
            update(Participant)
            .where(Participant.id == participant_id)
            .values(portal_failed_attempts=0, portal_locked_until=None, portal_last_failed_at=None)
            .execution_options(synchronize_session=False)
        )
        self._db.execute(stmt)
        if commit:
            _commit_or_rollback(self._db, f"limpar falhas participant_id={participant_id}")


class AccessTokenRepository:
    """
    Repositório de tokens de acesso (somente hash do segredo).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def max_version(self, participant_id: int) -> int:
        stmt = select(func.max(ParticipantAccessToken.version)).where(
            ParticipantAccessToken.participant_id == participant_id
        )
        return int(self._db.execute(stmt).scalar() or 0)

    def add(self, token: ParticipantAccessToken, commit: bool = True) -> ParticipantAccessToken:
        self._db.add(token)
        if commit:
            _commit_or_rollback(self._db, f"emitir token participant_id={token.participant_id}")
        else:
            self._db.flush()
        return token

    def get_active(self, token_id: str) -> Optional[ParticipantAccessToken]:
        stmt = select(ParticipantAccessToken).where(
            ParticipantAccessToken.id == token_id,
            ParticipantAccessToken.revoked_at.is_(None),
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def active_version(self, participant_id: int) -> Optional[int]:
        stmt = select(func.max(ParticipantAccessToken.version)).where(
            ParticipantAccessToken.participant_id == participant_id,
            ParticipantAccessToken.revoked_at.is_(None),
        )
        return self._db.execute(stmt).scalar()

    def revoke_all(self, participant_id: int, now: datetime, commit: bool = True) -> int:
        stmt = (
            update(ParticipantAccessToken)
            .where(
                ParticipantAccessToken.participant_id == participant_id,
                ParticipantAccessToken.revoked_at.is_(None),
            )
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(stmt)
        if commit:
            _commit_or_rollback(self._db, f"revogar tokens participant_id={participant_id}")
        return result.rowcount or 0


class PortalSessionRepository:
    """
    Repositório de sessões do portal.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def add(self, session: PortalSession, commit: bool = True) -> PortalSession:
        self._db.add(session)
        if commit:
            _commit_or_rollback(self._db, f"criar sessão participant_id={session.participant_id}")
        return session

    def get_by_hash(self, token_hash: str) -> Optional[PortalSession]:
        stmt = select(PortalSession).where(PortalSession.token_hash == token_hash)
        return self._db.execute(stmt).scalar_one_or_none()

    def delete(self, session: PortalSession, commit: bool = True) -> None:
        self._db.delete(session)
        if commit:
            _commit_or_rollback(self._db, f"remover sessão id={session.id}")

    def delete_for_participant(self, participant_id: int, commit: bool = True) -> int:
        stmt = delete(PortalSession).where(PortalSession.participant_id == participant_id)
        result = self._db.execute(stmt.execution_options(synchronize_session=False))
        if commit:
            _commit_or_rollback(self._db, f"remover sessões participant_id={participant_id}")
        return result.rowcount or 0


class CheckInRepository:
    """
    Repositório de check-ins. A restrição única (event_id, participant_id)
    fica no banco; este repositório não tenta deduplicar sozinho.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def insert(
        self,
        organization_id: int,
        event_id: int,
        participant_id: int,
        method: str,
        now: datetime,
    ) -> CheckIn:
        """
        Insere o check-in. Em conflito faz rollback e relança IntegrityError
        para o chamador decidir se é duplicata.
        """
        check_in = CheckIn(
            organization_id=organization_id,
            event_id=event_id,
            participant_id=participant_id,
            method=method,
            checked_in_at=now,
        )
        self._db.add(check_in)
        try:
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error(
                f"Erro de banco de dados ao inserir check-in: event_id={event_id}, "
                f"participant_id={participant_id}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            self._db.rollback()
            raise
        return check_in

    def exists(self, organization_id: int, event_id: int, participant_id: int) -> bool:
        stmt = select(CheckIn.id).where(
            CheckIn.organization_id == organization_id,
            CheckIn.event_id == event_id,
            CheckIn.participant_id == participant_id,
        ).limit(1)
        return self._db.execute(stmt).first() is not None

    def delete(self, organization_id: int, event_id: int, participant_id: int) -> bool:
        """
        Remove o check-in se existir. Retorna False se não havia linha.
        """
        stmt = delete(CheckIn).where(
            CheckIn.organization_id == organization_id,
            CheckIn.event_id == event_id,
            CheckIn.participant_id == participant_id,
        )
        result = self._db.execute(stmt.execution_options(synchronize_session=False))
        _commit_or_rollback(self._db, f"desfazer check-in participant_id={participant_id}")
        return (result.rowcount or 0) > 0

    def delete_all(self, organization_id: int, event_id: int) -> int:
        stmt = delete(CheckIn).where(
            CheckIn.organization_id == organization_id,
            CheckIn.event_id == event_id,
        )
        result = self._db.execute(stmt.execution_options(synchronize_session=False))
        _commit_or_rollback(self._db, f"zerar check-ins event_id={event_id}")
        return result.rowcount or 0

    def count(self, organization_id: int, event_id: int) -> int:
        stmt = select(func.count(CheckIn.id)).where(
            CheckIn.organization_id == organization_id,
            CheckIn.event_id == event_id,
        )
        return int(self._db.execute(stmt).scalar_one())
