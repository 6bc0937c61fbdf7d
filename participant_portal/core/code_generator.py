"""
Geração de códigos curtos digitáveis (check-in, código de acesso do evento).
"""
import logging
import secrets
from typing import Callable

from .errors import ExhaustedError

logger = logging.getLogger(__name__)

# Sem I, O, 0 e 1 para evitar confusão na digitação
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_MAX_ATTEMPTS = 20


def generate_code(length: int) -> str:
    """
    Sorteia `length` bytes criptográficos e mapeia cada um no alfabeto.
    """
    if length < 1:
        raise ValueError("length deve ser >= 1")
    raw = secrets.token_bytes(length)
    return "".join(ALPHABET[b % len(ALPHABET)] for b in raw)


def generate_unique_code(
    length: int,
    exists: Callable[[str], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> str:
    """
    Gera um código que ainda não existe segundo o predicado `exists`.

    O laço só reduz a chance de colisão; a restrição única no insert
    continua sendo a garantia final.

    Raises:
        ExhaustedError: se nenhuma tentativa encontrou um código livre
    """
    if max_attempts < 1:
        raise ValueError("max_attempts deve ser >= 1")

    for attempt in range(1, max_attempts + 1):
        code = generate_code(length)
        if not exists(code):
            if attempt > 1:
                logger.debug(f"Código livre encontrado após {attempt} tentativas (length={length})")
            return code

    logger.error(
        f"Espaço de códigos esgotado: length={length}, max_attempts={max_attempts}. "
        f"Revise o tamanho do código/alfabeto."
    )
    raise ExhaustedError(f"Nenhum código livre após {max_attempts} tentativas")
