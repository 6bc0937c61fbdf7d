import logging
import time
from datetime import datetime
from uuid import uuid4
from fastapi import FastAPI, HTTPException, Header, Request
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import text
from typing import Optional
from pydantic import BaseModel
from ..config import AppConfig
from ..core.access_policy import AccessPolicy
from ..core.engine import PortalEngine
from ..core.errors import (
    ConflictError,
    ExhaustedError,
    LockedError,
    MalformedInputError,
    NotFoundError,
    PortalError,
    RateLimitedError,
    UnauthorizedError,
)
from ..core.portal_access import AccessCredentials

logger = logging.getLogger(__name__)


class PolicyModel(BaseModel):
    require_factor_for_token: bool
    require_factor_for_login: bool
    max_attempts: int
    lockout_minutes: int


class AccessRequest(BaseModel):
    token: Optional[str] = None  # token do QR/link
    access_code: Optional[str] = None  # código do evento
    identity_number: Optional[str] = None


class ConfirmRequest(AccessRequest):
    factor: Optional[str] = None  # últimos 4 dígitos do telefone


class VerifyResponse(BaseModel):
    event_id: int
    display_name: str
    has_phone: bool
    phone_hint: Optional[str] = None
    requires_factor: bool
    is_locked: bool
    locked_for_seconds: int
    attempts_remaining: int
    policy: PolicyModel


class SessionResponse(BaseModel):
    session_token: str
    expires_at: datetime


class ProfileResponse(BaseModel):
    event_id: int
    event_name: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    participant_id: int
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    check_in_code: str
    arrived: bool
    policy: PolicyModel


class AccessStatusResponse(BaseModel):
    participant_id: int
    is_locked: bool
    locked_until: Optional[datetime] = None
    failed_attempts: int
    active_token_version: Optional[int] = None
    policy: PolicyModel


class AccessResetResponse(BaseModel):
    participant_id: int
    token: str
    version: int
    revoked_tokens: int
    removed_sessions: int
    policy: PolicyModel


class AccessGrantResponse(AccessStatusResponse):
    token: Optional[str] = None  # só quando emitido nesta chamada
    issued: bool


class AccessRevokeResponse(BaseModel):
    participant_id: int
    revoked_tokens: int
    removed_sessions: int


class CheckInRequest(BaseModel):
    participant_id: Optional[int] = None
    code: Optional[str] = None
    method: Optional[str] = "manual"  # "manual" ou "qr"


class CheckInResponse(BaseModel):
    participant_id: int
    full_name: str
    already_arrived: bool
    arrived_count: int
    total_count: int


class UndoResponse(BaseModel):
    participant_id: int
    already_absent: bool
    arrived_count: int
    total_count: int


class SummaryResponse(BaseModel):
    event_id: int
    arrived_count: int
    total_count: int


class VerifyCodeRequest(BaseModel):
    code: Optional[str] = None


class VerifyCodeResponse(BaseModel):
    valid: bool
    code: Optional[str] = None


class ResetCheckInsResponse(BaseModel):
    event_id: int
    removed: int


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware que gera request_id único para cada requisição
    e adiciona aos logs e headers de resposta.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = uuid4().hex[:16]  # 16 caracteres hexadecimais
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Request processado: request_id={request_id}, "
            f"method={request.method}, path={request.url.path}, "
            f"status={response.status_code}, duration_ms={duration_ms:.2f}"
        )

        return response


def require_api_key(config: AppConfig, x_api_key: Optional[str]) -> None:
    """
    Valida API key das rotas de operador baseado no ambiente.

    Em produção (ENV=prod), sempre exige API key.
    Em desenvolvimento (ENV=dev), só exige se ADMIN_API_KEY estiver configurada.
    """
    expected_key = config.admin_api_key or ""

    if config.env == "prod":
        if not x_api_key or x_api_key != expected_key:
            logger.warning("Tentativa de acesso não autorizado em PRODUÇÃO")
            raise HTTPException(status_code=401, detail="Invalid API key")
    else:
        if expected_key and expected_key.strip():
            if x_api_key != expected_key:
                logger.warning("Tentativa de acesso não autorizado em DEV")
                raise HTTPException(status_code=401, detail="Invalid API key")
        else:
            logger.debug("ADMIN_API_KEY não configurada, aceitando requisição sem autenticação (modo desenvolvimento)")


def parse_organization_id(x_organization_id: Optional[str]) -> int:
    """
    Tenant da requisição do operador (header X-Organization-Id).
    """
    try:
        organization_id = int((x_organization_id or "").strip())
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Organization-Id header is required.")
    if organization_id < 1:
        raise HTTPException(status_code=400, detail="X-Organization-Id header is required.")
    return organization_id


def portal_error_to_http(error: PortalError, request_id: str) -> HTTPException:
    """
    Converte falhas do domínio em respostas HTTP.

    Bloqueio e rate limit carregam Retry-After; o resto é genérico.
    """
    if isinstance(error, MalformedInputError):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, UnauthorizedError):
        detail = {"message": error.message}
        if error.attempts_remaining is not None:
            detail["attempts_remaining"] = error.attempts_remaining
        return HTTPException(status_code=401, detail=detail)
    if isinstance(error, LockedError):
        return HTTPException(
            status_code=423,
            detail={"message": error.message, "retry_after_seconds": error.retry_after_seconds},
            headers={"Retry-After": str(error.retry_after_seconds)},
        )
    if isinstance(error, RateLimitedError):
        return HTTPException(
            status_code=429,
            detail={"message": error.message, "retry_after_seconds": error.retry_after_seconds},
            headers={"Retry-After": str(error.retry_after_seconds)},
        )
    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, ExhaustedError):
        logger.error(f"Espaço de códigos esgotado: request_id={request_id}, error={error.message}")
        return HTTPException(status_code=503, detail="Service temporarily unavailable.")

    logger.error(f"Erro de domínio não mapeado: request_id={request_id}, error={type(error).__name__}")
    return HTTPException(status_code=500, detail="Internal error.")


def _policy_model(policy: AccessPolicy) -> PolicyModel:
    return PolicyModel(
        require_factor_for_token=policy.require_factor_for_token,
        require_factor_for_login=policy.require_factor_for_login,
        max_attempts=policy.max_attempts,
        lockout_minutes=policy.lockout_minutes,
    )


def _credentials(payload: AccessRequest) -> AccessCredentials:
    if payload.token is not None and payload.token.strip():
        return AccessCredentials(token=payload.token.strip())
    if payload.access_code is not None and payload.identity_number is not None:
        return AccessCredentials(access_code=payload.access_code, identity_number=payload.identity_number)
    raise MalformedInputError("Provide a token or an access code with identity number.")


def _origin(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def create_app(config: Optional[AppConfig] = None, engine: Optional[PortalEngine] = None) -> FastAPI:
    """
    Cria a aplicação FastAPI e injeta dependências principais (config + engine).
    """
    if config is None:
        config = engine.config if engine is not None else AppConfig.load_from_env()
    if engine is None:
        engine = PortalEngine(config=config)

    app = FastAPI(
        title="Participant Portal API",
        version="0.1.0",
        description="Acesso do participante ao portal e check-in de eventos.",
    )

    app.add_middleware(RequestIDMiddleware)

    def fail(e: Exception, request_id: str, action: str, start_time: float) -> HTTPException:
        duration_ms = (time.time() - start_time) * 1000
        if isinstance(e, PortalError):
            logger.info(
                f"{action} recusado: request_id={request_id}, reason={e.code}, "
                f"duration_ms={duration_ms:.2f}"
            )
            return portal_error_to_http(e, request_id)

        logger.error(
            f"Erro ao {action}: request_id={request_id}, duration_ms={duration_ms:.2f}, "
            f"error={type(e).__name__}: {e}",
            exc_info=True,
        )
        return HTTPException(status_code=500, detail="Internal error. Try again later.")

    @app.get("/health")
    def health_check():
        """
        Endpoint de health check para monitoramento e Docker healthchecks.
        """
        db_ok = True
        db_session = engine.db_session_factory()
        try:
            db_session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(f"Database health check falhou: {e}")
            db_ok = False
        finally:
            db_session.close()

        return {
            "status": "healthy" if db_ok else "degraded",
            "database": "ok" if db_ok else "error",
            "rate_limiter": type(engine.rate_limiter).__name__,
        }

    # ------------------------------------------------------------------
    # Portal do participante
    # ------------------------------------------------------------------

    @app.post("/portal/access/verify", response_model=VerifyResponse)
    def verify_access(payload: AccessRequest, request: Request) -> VerifyResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()
        try:
            result = engine.portal.verify_access(_credentials(payload), origin=_origin(request))
            return VerifyResponse(
                event_id=result.event_id,
                display_name=result.participant.display_name,
                has_phone=result.participant.has_phone,
                phone_hint=result.phone_hint,
                requires_factor=result.requires_factor,
                is_locked=result.is_locked,
                locked_for_seconds=result.locked_for_seconds,
                attempts_remaining=result.attempts_remaining,
                policy=_policy_model(result.policy),
            )
        except Exception as e:
            raise fail(e, request_id, "verificar acesso", start_time)

    @app.post("/portal/access/confirm", response_model=SessionResponse)
    def confirm_access(payload: ConfirmRequest, request: Request) -> SessionResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()
        try:
            grant = engine.portal.confirm_access(
                _credentials(payload),
                factor=payload.factor,
                origin=_origin(request),
            )
            return SessionResponse(session_token=grant.handle, expires_at=grant.expires_at)
        except Exception as e:
            raise fail(e, request_id, "confirmar acesso", start_time)

    @app.get("/portal/me", response_model=ProfileResponse)
    def portal_me(
        request: Request,
        x_portal_session: Optional[str] = Header(default=None, alias="X-Portal-Session"),
    ) -> ProfileResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()
        try:
            profile = engine.portal.get_profile(x_portal_session)
            return ProfileResponse(
                event_id=profile.event_id,
                event_name=profile.event_name,
                start_date=profile.start_date,
                end_date=profile.end_date,
                participant_id=profile.participant_id,
                full_name=profile.full_name,
                email=profile.email,
                phone=profile.phone,
                check_in_code=profile.check_in_code,
                arrived=profile.arrived,
                policy=_policy_model(profile.policy),
            )
        except Exception as e:
            raise fail(e, request_id, "carregar perfil", start_time)

    # ------------------------------------------------------------------
    # Operador (guia / organização)
    # ------------------------------------------------------------------

    @app.get("/events/{event_id}/participants/{participant_id}/access", response_model=AccessStatusResponse)
    def get_participant_access(
        event_id: int,
        participant_id: int,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> AccessStatusResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            status = engine.portal.get_access_status(organization_id, event_id, participant_id)
            return AccessStatusResponse(
                participant_id=status.participant_id,
                is_locked=status.is_locked,
                locked_until=status.locked_until,
                failed_attempts=status.failed_attempts,
                active_token_version=status.active_token_version,
                policy=_policy_model(status.policy),
            )
        except Exception as e:
            raise fail(e, request_id, "consultar acesso", start_time)

    @app.post("/events/{event_id}/participants/{participant_id}/access", response_model=AccessGrantResponse)
    def ensure_participant_access(
        event_id: int,
        participant_id: int,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> AccessGrantResponse:
        """
        Emite o primeiro token do participante (QR/link) se ainda não houver um ativo.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            grant = engine.portal.ensure_access(organization_id, event_id, participant_id)
            status = grant.status
            return AccessGrantResponse(
                participant_id=status.participant_id,
                is_locked=status.is_locked,
                locked_until=status.locked_until,
                failed_attempts=status.failed_attempts,
                active_token_version=status.active_token_version,
                policy=_policy_model(status.policy),
                token=grant.access.token if grant.issued else None,
                issued=grant.issued,
            )
        except Exception as e:
            raise fail(e, request_id, "emitir acesso", start_time)

    @app.post("/events/{event_id}/participants/{participant_id}/access/revoke", response_model=AccessRevokeResponse)
    def revoke_participant_access(
        event_id: int,
        participant_id: int,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> AccessRevokeResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            revocation = engine.portal.revoke_access(organization_id, event_id, participant_id)
            return AccessRevokeResponse(
                participant_id=revocation.participant_id,
                revoked_tokens=revocation.revoked_tokens,
                removed_sessions=revocation.removed_sessions,
            )
        except Exception as e:
            raise fail(e, request_id, "revogar acesso", start_time)

    @app.post("/events/{event_id}/participants/{participant_id}/access/reset", response_model=AccessResetResponse)
    def reset_participant_access(
        event_id: int,
        participant_id: int,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> AccessResetResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            reset = engine.portal.reset_access(organization_id, event_id, participant_id)
            logger.info(
                f"Reset de acesso pelo operador: request_id={request_id}, "
                f"participant_id={participant_id}, version={reset.access.version}"
            )
            return AccessResetResponse(
                participant_id=participant_id,
                token=reset.access.token,
                version=reset.access.version,
                revoked_tokens=reset.revoked_tokens,
                removed_sessions=reset.removed_sessions,
                policy=_policy_model(reset.policy),
            )
        except Exception as e:
            raise fail(e, request_id, "resetar acesso", start_time)

    @app.post("/events/{event_id}/checkins", response_model=CheckInResponse)
    def check_in(
        event_id: int,
        payload: CheckInRequest,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> CheckInResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            result = engine.checkins.check_in(
                organization_id,
                event_id,
                participant_id=payload.participant_id,
                code=payload.code,
                method=payload.method,
            )
            return CheckInResponse(
                participant_id=result.participant_id,
                full_name=result.full_name,
                already_arrived=result.already_arrived,
                arrived_count=result.arrived_count,
                total_count=result.total_count,
            )
        except Exception as e:
            raise fail(e, request_id, "registrar check-in", start_time)

    @app.post("/events/{event_id}/checkins/undo", response_model=UndoResponse)
    def undo_check_in(
        event_id: int,
        payload: CheckInRequest,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> UndoResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            result = engine.checkins.undo(
                organization_id,
                event_id,
                participant_id=payload.participant_id,
                code=payload.code,
            )
            return UndoResponse(
                participant_id=result.participant_id,
                already_absent=result.already_absent,
                arrived_count=result.arrived_count,
                total_count=result.total_count,
            )
        except Exception as e:
            raise fail(e, request_id, "desfazer check-in", start_time)

    @app.get("/events/{event_id}/checkins/summary", response_model=SummaryResponse)
    def check_in_summary(
        event_id: int,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> SummaryResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            arrived, total = engine.checkins.summary(organization_id, event_id)
            return SummaryResponse(event_id=event_id, arrived_count=arrived, total_count=total)
        except Exception as e:
            raise fail(e, request_id, "consultar resumo de check-in", start_time)

    @app.post("/events/{event_id}/checkins/verify-code", response_model=VerifyCodeResponse)
    def verify_check_in_code(
        event_id: int,
        payload: VerifyCodeRequest,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> VerifyCodeResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            code = engine.checkins.verify_code(event_id, payload.code, organization_id=organization_id)
            return VerifyCodeResponse(valid=code is not None, code=code)
        except Exception as e:
            raise fail(e, request_id, "verificar código de check-in", start_time)

    @app.post("/events/{event_id}/checkins/reset", response_model=ResetCheckInsResponse)
    def reset_check_ins(
        event_id: int,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    ) -> ResetCheckInsResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        require_api_key(config, x_api_key)
        organization_id = parse_organization_id(x_organization_id)

        start_time = time.time()
        try:
            removed = engine.checkins.reset_all(organization_id, event_id)
            logger.info(f"Check-ins zerados pelo operador: request_id={request_id}, event_id={event_id}, removed={removed}")
            return ResetCheckInsResponse(event_id=event_id, removed=removed)
        except Exception as e:
            raise fail(e, request_id, "zerar check-ins", start_time)

    return app
