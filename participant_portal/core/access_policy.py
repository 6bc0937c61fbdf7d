"""
Política de acesso do portal e máquina de estados de bloqueio por participante.

Estados:
    OPEN   - contador abaixo do máximo e sem bloqueio ativo
    LOCKED - locked_until definido e no futuro

A expiração do bloqueio é avaliada de forma preguiçosa, na próxima tentativa.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ..storage.models import Organization, Participant
from ..storage.repository import ParticipantRepository

logger = logging.getLogger(__name__)


class LockState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


@dataclass(frozen=True)
class AccessPolicy:
    """
    Política por organização. Somente leitura para este subsistema.
    """
    require_factor_for_token: bool = True
    require_factor_for_login: bool = False
    max_attempts: int = 5
    lockout_minutes: int = 10

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    def requires_factor(self, via_token: bool) -> bool:
        return self.require_factor_for_token if via_token else self.require_factor_for_login

    @classmethod
    def from_organization(
        cls,
        organization: Organization,
        default_max_attempts: int = 5,
        default_lockout_minutes: int = 10,
    ) -> "AccessPolicy":
        """
        Colunas vazias na organização herdam os padrões da instalação
        (PORTAL_MAX_ATTEMPTS / PORTAL_LOCK_MINUTES).
        """
        return cls(
            require_factor_for_token=bool(organization.require_factor_for_token),
            require_factor_for_login=bool(organization.require_factor_for_login),
            max_attempts=organization.portal_max_attempts or default_max_attempts,
            lockout_minutes=organization.portal_lock_minutes or default_lockout_minutes,
        )


@dataclass(frozen=True)
class LockStatus:
    state: LockState
    failed_attempts: int
    locked_until: Optional[datetime]
    retry_after_seconds: int
    attempts_remaining: int

    @property
    def is_locked(self) -> bool:
        return self.state == LockState.LOCKED


def evaluate_lock(
    policy: AccessPolicy,
    failed_attempts: int,
    locked_until: Optional[datetime],
    now: datetime,
) -> LockStatus:
    """
    Avalia o estado atual sem alterar nada.

    Depois que um bloqueio expira o contador continua no máximo: resta
    exatamente uma tentativa, e a próxima falha bloqueia de novo.
    """
    failed = failed_attempts or 0
    if locked_until is not None and locked_until > now:
        retry_after = max(1, math.ceil((locked_until - now).total_seconds()))
        return LockStatus(LockState.LOCKED, failed, locked_until, retry_after, 0)

    return LockStatus(
        LockState.OPEN,
        failed,
        None,
        0,
        max(1, policy.max_attempts - failed),
    )


def next_failure_state(
    policy: AccessPolicy,
    failed_attempts: int,
    now: datetime,
) -> Tuple[int, Optional[datetime]]:
    """
    Transição OPEN --falha-->: retorna (novo contador, locked_until ou None).

    O LockoutManager aplica a mesma regra direto no banco.
    """
    failed = (failed_attempts or 0) + 1
    if failed >= policy.max_attempts:
        return failed, now + policy.lockout_duration
    return failed, None


class LockoutManager:
    """
    Aplica as transições da máquina de estados sobre a linha persistida.

    Falhas são incrementadas atomicamente no banco e o bloqueio é aplicado
    por um UPDATE condicional, então tentativas concorrentes nunca deixam
    o participante sem bloqueio depois de atingir o limite.
    """

    def status(self, participant: Participant, policy: AccessPolicy, now: datetime) -> LockStatus:
        return evaluate_lock(policy, participant.portal_failed_attempts, participant.portal_locked_until, now)

    def record_failure(
        self,
        db: Session,
        participant_id: int,
        policy: AccessPolicy,
        now: datetime,
    ) -> LockStatus:
        repo = ParticipantRepository(db)
        # Incremento e bloqueio no mesmo commit
        repo.increment_failure(participant_id, now, commit=False)
        locked = repo.lock_if_threshold_reached(
            participant_id,
            policy.max_attempts,
            now + policy.lockout_duration,
            now,
        )

        participant = repo.reload(participant_id)
        status = self.status(participant, policy, now)
        if locked:
            logger.warning(
                f"Participante bloqueado no portal: participant_id={participant_id}, "
                f"failed_attempts={status.failed_attempts}, lock_minutes={policy.lockout_minutes}"
            )
        else:
            logger.info(
                f"Falha no fator secundário: participant_id={participant_id}, "
                f"failed_attempts={status.failed_attempts}, remaining={status.attempts_remaining}"
            )
        return status

    def record_success(self, db: Session, participant_id: int) -> None:
        ParticipantRepository(db).clear_failures(participant_id)
        logger.debug(f"Contador de falhas zerado após sucesso: participant_id={participant_id}")

    def reset(self, db: Session, participant_id: int, commit: bool = True) -> None:
        """
        Reset do operador: volta para OPEN incondicionalmente.
        """
        ParticipantRepository(db).clear_failures(participant_id, commit=commit)
        logger.info(f"Bloqueio do portal resetado: participant_id={participant_id}")
