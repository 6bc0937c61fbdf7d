"""
Fluxo de acesso do participante ao portal.

Duas formas de chegar até o participante:
    - token do QR/link ("<id>.<segredo>")
    - código de acesso do evento + documento de identidade

Depois da identificação, a organização pode exigir o fator secundário
(últimos 4 dígitos do telefone) antes de emitir a sessão.

Ordem das verificações em confirm_access:
    1. rate limit por identidade+origem
    2. resolução do participante (falha = NotFound + falha no rate limit)
    3. bloqueio ativo (não consome tentativa nem altera o contador)
    4. fator secundário
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError

from .access_policy import AccessPolicy, LockoutManager, LockStatus
from .access_tokens import AccessTokenIssuer, IssuedAccessToken
from .checkin_ledger import CheckInLedger
from .clock import Clock, utcnow
from .errors import LockedError, NotFoundError, RateLimitedError, UnauthorizedError
from .normalizers import (
    IDENTITY_NUMBER_LENGTH,
    build_phone_hint,
    extract_last_digits,
    factor_matches,
    mask_display_name,
    mask_identifier,
    normalize_access_code,
    normalize_identity_number,
)
from .rate_limiter import build_attempt_key
from .session_manager import SessionGrant, SessionManager
from ..storage.models import Event, Participant
from ..storage.repository import (
    AccessTokenRepository,
    EventRepository,
    OrganizationRepository,
    ParticipantRepository,
    PortalSessionRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessCredentials:
    """
    Credenciais de identificação: `token` OU (`access_code`, `identity_number`).
    """
    token: Optional[str] = None
    access_code: Optional[str] = None
    identity_number: Optional[str] = None

    @property
    def via_token(self) -> bool:
        return self.token is not None


@dataclass(frozen=True)
class ParticipantSummary:
    display_name: str
    has_phone: bool


@dataclass(frozen=True)
class AccessVerification:
    event_id: int
    participant: ParticipantSummary
    phone_hint: Optional[str]
    policy: AccessPolicy
    requires_factor: bool
    is_locked: bool
    locked_for_seconds: int
    attempts_remaining: int


@dataclass(frozen=True)
class ParticipantProfile:
    event_id: int
    event_name: str
    start_date: Optional[str]
    end_date: Optional[str]
    participant_id: int
    full_name: str
    email: Optional[str]
    phone: Optional[str]
    check_in_code: str
    arrived: bool
    policy: AccessPolicy


@dataclass(frozen=True)
class AccessStatus:
    participant_id: int
    is_locked: bool
    locked_until: Optional[datetime]
    failed_attempts: int
    active_token_version: Optional[int]
    policy: AccessPolicy


@dataclass(frozen=True)
class AccessReset:
    access: IssuedAccessToken
    revoked_tokens: int
    removed_sessions: int
    policy: AccessPolicy


@dataclass(frozen=True)
class AccessGrant:
    """
    Resultado de `ensure_access`. `access` só vem preenchido quando o token
    foi emitido nesta chamada; de tokens antigos só existe o hash.
    """
    status: AccessStatus
    access: Optional[IssuedAccessToken]

    @property
    def issued(self) -> bool:
        return self.access is not None


@dataclass(frozen=True)
class AccessRevocation:
    participant_id: int
    revoked_tokens: int
    removed_sessions: int


class PortalAccessService:
    """
    Serviço do portal: verificação, confirmação, perfil e operações do operador.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        rate_limiter,
        token_issuer: AccessTokenIssuer,
        session_manager: SessionManager,
        checkin_ledger: CheckInLedger,
        lockout: Optional[LockoutManager] = None,
        access_code_length: int = 8,
        portal_max_attempts: int = 5,
        portal_lock_minutes: int = 10,
        clock: Clock = utcnow,
        max_reset_retries: int = 3,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._rate_limiter = rate_limiter
        self._token_issuer = token_issuer
        self._session_manager = session_manager
        self._checkin_ledger = checkin_ledger
        self._lockout = lockout or LockoutManager()
        self._access_code_length = access_code_length
        self._portal_max_attempts = portal_max_attempts
        self._portal_lock_minutes = portal_lock_minutes
        self._clock = clock
        self._max_reset_retries = max_reset_retries

    # ------------------------------------------------------------------
    # Identificação
    # ------------------------------------------------------------------

    def _attempt_key(self, credentials: AccessCredentials, origin: Optional[str]) -> str:
        if credentials.via_token:
            return build_attempt_key("token", origin)
        code = normalize_access_code(credentials.access_code)
        identity = normalize_identity_number(credentials.identity_number)
        return build_attempt_key(f"login:{code}:{identity}", origin)

    def _check_rate_limit(self, key: str) -> None:
        decision = self._rate_limiter.is_limited(key)
        if decision.limited:
            raise RateLimitedError(decision.retry_after_seconds, "Too many attempts. Try again later.")

    def _find_by_login(self, db: Session, access_code: Optional[str], identity_number: Optional[str]) -> Participant:
        code = normalize_access_code(access_code)
        identity = normalize_identity_number(identity_number)
        if len(code) != self._access_code_length or len(identity) != IDENTITY_NUMBER_LENGTH:
            logger.debug("Login do portal rejeitado: reason=format")
            raise NotFoundError("Participant not found.")

        matches = []
        for event in EventRepository(db).find_by_access_code(code):
            matches.extend(ParticipantRepository(db).find_by_identity(event.organization_id, event.id, identity))

        # Documento repetido no mesmo evento é ambíguo: tratado como inexistente
        if len(matches) != 1:
            logger.debug(
                f"Login do portal rejeitado: reason=lookup, identity={mask_identifier(identity)}, "
                f"matches={len(matches)}"
            )
            raise NotFoundError("Participant not found.")
        return matches[0]

    def _resolve(self, credentials: AccessCredentials, key: str) -> Participant:
        """
        Resolve o participante. Qualquer falha conta no rate limit
        e sobe como o mesmo NotFoundError.
        """
        try:
            if credentials.via_token:
                return self._token_issuer.resolve(credentials.token)

            db_session: Session = self._db_session_factory()
            try:
                return self._find_by_login(db_session, credentials.access_code, credentials.identity_number)
            finally:
                db_session.close()
        except NotFoundError:
            self._rate_limiter.register_failure(key)
            raise

    def _policy_for(self, db: Session, participant: Participant) -> AccessPolicy:
        organization = OrganizationRepository(db).get(participant.organization_id)
        if organization is None:
            raise NotFoundError("Participant not found.")
        return AccessPolicy.from_organization(
            organization,
            default_max_attempts=self._portal_max_attempts,
            default_lockout_minutes=self._portal_lock_minutes,
        )

    def _load_state(self, participant_id: int) -> Tuple[Participant, AccessPolicy, LockStatus]:
        db_session: Session = self._db_session_factory()
        try:
            participant = ParticipantRepository(db_session).get(participant_id)
            if participant is None:
                raise NotFoundError("Participant not found.")
            policy = self._policy_for(db_session, participant)
            return participant, policy, self._lockout.status(participant, policy, self._clock())
        finally:
            db_session.close()

    @staticmethod
    def _factor_required(policy: AccessPolicy, participant: Participant, via_token: bool) -> bool:
        # Sem telefone utilizável não há fator a conferir
        return policy.requires_factor(via_token) and extract_last_digits(participant.phone) is not None

    # ------------------------------------------------------------------
    # Operações do participante
    # ------------------------------------------------------------------

    def verify_access(self, credentials: AccessCredentials, origin: Optional[str] = None) -> AccessVerification:
        """
        Primeira etapa: identifica o participante e informa o que falta
        (fator secundário, bloqueio, tentativas restantes).
        """
        key = self._attempt_key(credentials, origin)
        self._check_rate_limit(key)
        resolved = self._resolve(credentials, key)
        participant, policy, status = self._load_state(resolved.id)

        logger.info(
            f"Acesso verificado: participant_id={participant.id}, via_token={credentials.via_token}, "
            f"locked={status.is_locked}"
        )
        return AccessVerification(
            event_id=participant.event_id,
            participant=ParticipantSummary(
                display_name=mask_display_name(participant.full_name),
                has_phone=bool(participant.phone and participant.phone.strip()),
            ),
            phone_hint=build_phone_hint(participant.phone),
            policy=policy,
            requires_factor=self._factor_required(policy, participant, credentials.via_token),
            is_locked=status.is_locked,
            locked_for_seconds=status.retry_after_seconds,
            attempts_remaining=status.attempts_remaining,
        )

    def confirm_access(
        self,
        credentials: AccessCredentials,
        factor: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> SessionGrant:
        """
        Segunda etapa: confere o fator secundário (se exigido) e emite a sessão.
        """
        key = self._attempt_key(credentials, origin)
        self._check_rate_limit(key)
        resolved = self._resolve(credentials, key)
        participant, policy, status = self._load_state(resolved.id)

        if status.is_locked:
            logger.info(
                f"Tentativa durante bloqueio: participant_id={participant.id}, "
                f"retry_after={status.retry_after_seconds}s"
            )
            raise LockedError(status.retry_after_seconds, "Too many failed attempts. Try again later.")

        if self._factor_required(policy, participant, credentials.via_token):
            if not factor_matches(participant.phone, factor):
                db_session: Session = self._db_session_factory()
                try:
                    status = self._lockout.record_failure(db_session, participant.id, policy, self._clock())
                finally:
                    db_session.close()
                self._rate_limiter.register_failure(key)

                if status.is_locked:
                    raise LockedError(status.retry_after_seconds, "Too many failed attempts. Try again later.")
                raise UnauthorizedError("Verification failed.", attempts_remaining=status.attempts_remaining)

        if status.failed_attempts:
            db_session = self._db_session_factory()
            try:
                self._lockout.record_success(db_session, participant.id)
            finally:
                db_session.close()

        return self._session_manager.create_session(participant)

    def get_profile(self, handle: Optional[str]) -> ParticipantProfile:
        participant = self._session_manager.validate(handle)

        db_session: Session = self._db_session_factory()
        try:
            event: Optional[Event] = EventRepository(db_session).get(participant.event_id)
            if event is None:
                raise UnauthorizedError("Invalid session.")
            policy = self._policy_for(db_session, participant)
        except NotFoundError:
            raise UnauthorizedError("Invalid session.")
        finally:
            db_session.close()

        arrived = self._checkin_ledger.is_arrived(participant.organization_id, participant.event_id, participant.id)

        return ParticipantProfile(
            event_id=event.id,
            event_name=event.name,
            start_date=event.start_date,
            end_date=event.end_date,
            participant_id=participant.id,
            full_name=participant.full_name,
            email=participant.email,
            phone=participant.phone,
            check_in_code=participant.check_in_code,
            arrived=arrived,
            policy=policy,
        )

    # ------------------------------------------------------------------
    # Operações do operador
    # ------------------------------------------------------------------

    def _get_scoped_participant(self, db: Session, organization_id: int, event_id: int, participant_id: int) -> Participant:
        participant = ParticipantRepository(db).get_scoped(organization_id, event_id, participant_id)
        if participant is None:
            raise NotFoundError("Participant not found.")
        return participant

    def get_access_status(self, organization_id: int, event_id: int, participant_id: int) -> AccessStatus:
        db_session: Session = self._db_session_factory()
        try:
            participant = self._get_scoped_participant(db_session, organization_id, event_id, participant_id)
            policy = self._policy_for(db_session, participant)
            status = self._lockout.status(participant, policy, self._clock())
            version = AccessTokenRepository(db_session).active_version(participant.id)
        finally:
            db_session.close()

        return AccessStatus(
            participant_id=participant_id,
            is_locked=status.is_locked,
            locked_until=status.locked_until,
            failed_attempts=status.failed_attempts,
            active_token_version=version,
            policy=policy,
        )

    def ensure_access(self, organization_id: int, event_id: int, participant_id: int) -> AccessGrant:
        """
        Garante que o participante tenha um token ativo.

        Sem token ativo, emite o primeiro e devolve o valor em claro (única vez).
        Com token ativo, só informa a versão: o segredo antigo não é recuperável,
        para um valor novo o operador usa reset_access.
        """
        db_session: Session = self._db_session_factory()
        try:
            participant = self._get_scoped_participant(db_session, organization_id, event_id, participant_id)
        finally:
            db_session.close()

        issued: Optional[IssuedAccessToken] = None
        if self._token_issuer.active_version(participant.id) is None:
            issued = self._token_issuer.issue_for(participant)
            logger.info(f"Primeiro token de acesso emitido: participant_id={participant_id}, version={issued.version}")

        status = self.get_access_status(organization_id, event_id, participant_id)
        return AccessGrant(status=status, access=issued)

    def revoke_access(self, organization_id: int, event_id: int, participant_id: int) -> AccessRevocation:
        """
        Revoga todos os tokens e encerra as sessões abertas, sem emitir token novo.
        O estado de bloqueio não muda.
        """
        db_session: Session = self._db_session_factory()
        try:
            participant = self._get_scoped_participant(db_session, organization_id, event_id, participant_id)
        finally:
            db_session.close()

        revoked = self._token_issuer.revoke_all(participant.id)
        removed = self._session_manager.invalidate_all(participant.id)
        logger.info(
            f"Acesso revogado: participant_id={participant_id}, revoked_tokens={revoked}, "
            f"removed_sessions={removed}"
        )
        return AccessRevocation(participant_id=participant_id, revoked_tokens=revoked, removed_sessions=removed)

    def reset_access(self, organization_id: int, event_id: int, participant_id: int) -> AccessReset:
        """
        Reset do operador numa única transação: revoga tokens, remove sessões,
        zera o bloqueio e emite um token novo.
        """
        for attempt in range(1, self._max_reset_retries + 1):
            db_session: Session = self._db_session_factory()
            try:
                participant = self._get_scoped_participant(db_session, organization_id, event_id, participant_id)
                policy = self._policy_for(db_session, participant)
                now = self._clock()

                revoked = AccessTokenRepository(db_session).revoke_all(participant.id, now, commit=False)
                removed = PortalSessionRepository(db_session).delete_for_participant(participant.id, commit=False)
                self._lockout.reset(db_session, participant.id, commit=False)
                issued = self._token_issuer.stage(db_session, participant, now)
                db_session.commit()
            except IntegrityError:
                db_session.rollback()
                logger.warning(
                    f"Conflito ao resetar acesso: participant_id={participant_id}, attempt={attempt}"
                )
                if attempt == self._max_reset_retries:
                    raise
                continue
            finally:
                db_session.close()

            logger.info(
                f"Acesso resetado: participant_id={participant_id}, revoked_tokens={revoked}, "
                f"removed_sessions={removed}, version={issued.version}"
            )
            return AccessReset(access=issued, revoked_tokens=revoked, removed_sessions=removed, policy=policy)
