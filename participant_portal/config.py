from dataclasses import dataclass
import os
import logging
from typing import Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise RuntimeError(f"Variável de ambiente {name} deve ser um inteiro (recebido: {raw!r}).")


@dataclass(frozen=True)
class AppConfig:
    """
    Configurações principais do portal do participante.

    Centraliza os parâmetros de segurança (bloqueio, rate limit, sessão)
    para facilitar revisão, testes e mudanças futuras.
    """
    database_url: str = "sqlite:///./portal.db"
    env: str = "dev"  # "dev" ou "prod"
    redis_url: str = ""
    admin_api_key: str = ""
    session_ttl_hours: int = 24
    portal_max_attempts: int = 5  # falhas do fator secundário antes do bloqueio
    portal_lock_minutes: int = 10
    login_rate_limit_max_attempts: int = 6
    login_rate_limit_window_seconds: int = 600  # janela deslizante de 10 minutos
    checkin_code_length: int = 8
    event_access_code_length: int = 8
    code_max_attempts: int = 20

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_hours * 3600

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Carrega configuração a partir de variáveis de ambiente.
        Primeiro tenta carregar do arquivo .env, depois do ambiente do sistema.
        Levanta erro explícito se algo crítico faltar.
        """
        load_dotenv()

        database_url = os.getenv("DATABASE_URL", "sqlite:///./portal.db")
        redis_url = os.getenv("REDIS_URL", "")
        admin_api_key = os.getenv("ADMIN_API_KEY", "")

        env = os.getenv("ENV", "dev").lower()
        if env not in ("dev", "prod"):
            logger.warning(f"ENV inválido '{env}', usando 'dev' como padrão")
            env = "dev"

        # Em produção as rotas de operador nunca podem ficar abertas
        if env == "prod":
            if not admin_api_key or not admin_api_key.strip():
                raise RuntimeError(
                    "ENV=prod requer ADMIN_API_KEY definida. "
                    "Configure ADMIN_API_KEY no ambiente de produção."
                )
            logger.info("Modo PRODUÇÃO: ADMIN_API_KEY validada")
        elif not admin_api_key.strip():
            logger.warning(
                "⚠️  MODO DEV: ADMIN_API_KEY não configurada. "
                "Rotas de operador (check-in, reset de acesso) aceitarão requisições sem autenticação."
            )

        config = cls(
            database_url=database_url,
            env=env,
            redis_url=redis_url,
            admin_api_key=admin_api_key,
            session_ttl_hours=_int_from_env("PORTAL_SESSION_TTL_HOURS", 24),
            portal_max_attempts=_int_from_env("PORTAL_MAX_ATTEMPTS", 5),
            portal_lock_minutes=_int_from_env("PORTAL_LOCK_MINUTES", 10),
            login_rate_limit_max_attempts=_int_from_env("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", 6),
            login_rate_limit_window_seconds=_int_from_env("LOGIN_RATE_LIMIT_WINDOW_SECONDS", 600),
            checkin_code_length=_int_from_env("CHECKIN_CODE_LENGTH", 8),
            event_access_code_length=_int_from_env("EVENT_ACCESS_CODE_LENGTH", 8),
            code_max_attempts=_int_from_env("CODE_MAX_ATTEMPTS", 20),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Valida limites mínimos. Valores fora da faixa quebrariam
        as invariantes de bloqueio e de geração de códigos.
        """
        if self.portal_max_attempts < 1:
            raise RuntimeError("PORTAL_MAX_ATTEMPTS deve ser >= 1.")
        if self.portal_lock_minutes < 1:
            raise RuntimeError("PORTAL_LOCK_MINUTES deve ser >= 1.")
        if self.login_rate_limit_max_attempts < 1 or self.login_rate_limit_window_seconds < 1:
            raise RuntimeError("Parâmetros de rate limit devem ser >= 1.")
        if self.session_ttl_hours < 1:
            raise RuntimeError("PORTAL_SESSION_TTL_HOURS deve ser >= 1.")
        if self.checkin_code_length < 4 or self.event_access_code_length < 4:
            raise RuntimeError("Códigos de check-in/acesso devem ter pelo menos 4 caracteres.")

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_url and self.redis_url.strip())

    def database_type(self) -> Optional[str]:
        """Tipo de banco extraído da URL (sem credenciais), usado só em logs."""
        url = self.database_url.lower()
        if "sqlite" in url:
            return "sqlite"
        if "postgres" in url:
            return "postgres"
        return "unknown"
