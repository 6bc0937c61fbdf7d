"""
Exceções do domínio do portal do participante.

Os motivos internos de falha (token mal formado, hash divergente,
participante inexistente) são achatados em NotFound/Unauthorized
na fronteira para não permitir enumeração de contas.
"""
from typing import Optional


class PortalError(Exception):
    """Base de todas as falhas esperadas do portal."""

    code = "portal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class MalformedInputError(PortalError):
    code = "malformed_input"


class NotFoundError(PortalError):
    code = "not_found"


class UnauthorizedError(PortalError):
    code = "unauthorized"

    def __init__(self, message: str = "", attempts_remaining: Optional[int] = None) -> None:
        super().__init__(message)
        self.attempts_remaining = attempts_remaining


class LockedError(PortalError):
    """Participante bloqueado por excesso de falhas do fator secundário."""

    code = "locked"

    def __init__(self, retry_after_seconds: int, message: str = "") -> None:
        super().__init__(message)
        self.retry_after_seconds = max(1, int(retry_after_seconds))


class RateLimitedError(PortalError):
    """Origem+identidade excedeu a janela de tentativas (independente do bloqueio)."""

    code = "rate_limited"

    def __init__(self, retry_after_seconds: int, message: str = "") -> None:
        super().__init__(message)
        self.retry_after_seconds = max(1, int(retry_after_seconds))


class ConflictError(PortalError):
    code = "conflict"


class ExhaustedError(PortalError):
    """Não foi possível gerar um código livre. Nunca deveria acontecer com alfabeto/tamanho corretos."""

    code = "code_space_exhausted"


class TokenParseError(ValueError):
    """Token serializado inválido. Única exceção que parse_token pode lançar."""
