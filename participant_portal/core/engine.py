import logging
from typing import Optional
from sqlalchemy.orm import sessionmaker

from .access_policy import LockoutManager
from .access_tokens import AccessTokenIssuer
from .checkin_ledger import CheckInLedger
from .clock import Clock, utcnow
from .portal_access import PortalAccessService
from .registry import EventRegistry
from .rate_limiter import InMemoryRateLimiter
from .session_manager import SessionManager
from ..config import AppConfig
from ..ratelimit.redis_rate_limiter import RedisRateLimiter
from ..storage.database import create_session_factory

logger = logging.getLogger(__name__)


class PortalEngine:
    """
    Monta os serviços do portal a partir da configuração.

    - Escolhe o rate limiter (Redis se configurado, senão memória)
    - Cria a fábrica de sessões do banco
    - Expõe o serviço do portal e o ledger de check-in para a API
    """

    def __init__(
        self,
        config: AppConfig,
        db_session_factory: Optional[sessionmaker] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config
        self._clock = clock
        self._rate_limiter = self._create_rate_limiter(config)

        if db_session_factory is None:
            # Em produção, não criar tabelas automaticamente (usar Alembic)
            create_tables = config.env == "dev"
            db_session_factory = create_session_factory(config.database_url, create_tables=create_tables)
        self._db_session_factory = db_session_factory

        self._token_issuer = AccessTokenIssuer(db_session_factory, clock=clock)
        self._session_manager = SessionManager(
            db_session_factory,
            ttl_seconds=config.session_ttl_seconds,
            clock=clock,
        )
        self._checkins = CheckInLedger(
            db_session_factory,
            code_length=config.checkin_code_length,
            clock=clock,
        )
        self._portal = PortalAccessService(
            db_session_factory=db_session_factory,
            rate_limiter=self._rate_limiter,
            token_issuer=self._token_issuer,
            session_manager=self._session_manager,
            checkin_ledger=self._checkins,
            lockout=LockoutManager(),
            access_code_length=config.event_access_code_length,
            portal_max_attempts=config.portal_max_attempts,
            portal_lock_minutes=config.portal_lock_minutes,
            clock=clock,
        )
        self._registry = EventRegistry(
            db_session_factory,
            checkin_code_length=config.checkin_code_length,
            event_access_code_length=config.event_access_code_length,
            code_max_attempts=config.code_max_attempts,
            portal_max_attempts=config.portal_max_attempts,
            portal_lock_minutes=config.portal_lock_minutes,
        )

        logger.info(
            f"PortalEngine inicializado: env={config.env}, database_type={config.database_type()}, "
            f"rate_limiter={type(self._rate_limiter).__name__}, session_ttl_hours={config.session_ttl_hours}"
        )

    def _create_rate_limiter(self, config: AppConfig):
        if config.redis_enabled:
            try:
                limiter = RedisRateLimiter(
                    redis_url=config.redis_url,
                    max_attempts=config.login_rate_limit_max_attempts,
                    window_seconds=config.login_rate_limit_window_seconds,
                    clock=self._clock,
                )
                logger.info("Rate limit usando Redis")
                return limiter
            except Exception as e:
                logger.error(f"Erro ao inicializar RedisRateLimiter: {e}, usando memória como fallback")
        else:
            logger.info("Rate limit em memória (REDIS_URL não configurado)")

        return InMemoryRateLimiter(
            max_attempts=config.login_rate_limit_max_attempts,
            window_seconds=config.login_rate_limit_window_seconds,
            clock=self._clock,
        )

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def db_session_factory(self) -> sessionmaker:
        return self._db_session_factory

    @property
    def rate_limiter(self):
        return self._rate_limiter

    @property
    def tokens(self) -> AccessTokenIssuer:
        return self._token_issuer

    @property
    def sessions(self) -> SessionManager:
        return self._session_manager

    @property
    def portal(self) -> PortalAccessService:
        return self._portal

    @property
    def checkins(self) -> CheckInLedger:
        return self._checkins

    @property
    def registry(self) -> EventRegistry:
        return self._registry
