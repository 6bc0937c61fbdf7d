"""
Tokens opacos "id.segredo" do portal.

O id é hex aleatório (chave de busca) e o segredo é base64 URL-safe
aleatório; só o SHA-256 do segredo é persistido.
"""
import base64
import hashlib
import hmac
import re
import secrets
from typing import NamedTuple, Optional

from .errors import TokenParseError

TOKEN_BYTES = 32  # 256 bits de entropia para id e para o segredo
TOKEN_SEPARATOR = "."

_TOKEN_ID_PATTERN = re.compile(r"[0-9a-f]{64}")
_SECRET_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
_HASH_HEX_LENGTH = hashlib.sha256().digest_size * 2


class IssuedSecret(NamedTuple):
    token_id: str
    secret: str
    secret_hash: str


class ParsedToken(NamedTuple):
    token_id: str
    secret: str


def _urlsafe_random(num_bytes: int = TOKEN_BYTES) -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).rstrip(b"=").decode("ascii")


def generate_handle() -> str:
    """Handle aleatório de sessão (base64 URL-safe, sem padding)."""
    return _urlsafe_random()


def hash_secret(secret: str) -> str:
    """SHA-256 em hex maiúsculo do segredo em UTF-8."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest().upper()


def issue_token() -> IssuedSecret:
    """
    Gera um novo par (id, segredo) e o hash do segredo para armazenamento.
    """
    token_id = secrets.token_hex(TOKEN_BYTES)
    secret = _urlsafe_random()
    return IssuedSecret(token_id=token_id, secret=secret, secret_hash=hash_secret(secret))


def serialize_token(token_id: str, secret: str) -> str:
    return f"{token_id}{TOKEN_SEPARATOR}{secret}"


def parse_token(value: Optional[str]) -> ParsedToken:
    """
    Inverso estrito de serialize_token.

    Entrada adversária nunca gera outra exceção além de TokenParseError.
    """
    if not isinstance(value, str):
        raise TokenParseError("token ausente")

    candidate = value.strip()
    if TOKEN_SEPARATOR not in candidate:
        raise TokenParseError("separador ausente")

    token_id, secret = candidate.split(TOKEN_SEPARATOR, 1)
    if not _TOKEN_ID_PATTERN.fullmatch(token_id):
        raise TokenParseError("id com formato inválido")
    if not secret or not _SECRET_PATTERN.fullmatch(secret):
        raise TokenParseError("segredo vazio ou com caracteres inválidos")

    return ParsedToken(token_id=token_id, secret=secret)


def verify_secret(secret: Optional[str], stored_hash: Optional[str]) -> bool:
    """
    Recalcula o hash do segredo e compara em tempo constante.

    Hash armazenado mal formado é tratado como falha, nunca como exceção.
    """
    if not secret or not isinstance(secret, str) or not isinstance(stored_hash, str):
        return False
    if len(stored_hash) != _HASH_HEX_LENGTH:
        return False
    try:
        stored_bytes = bytes.fromhex(stored_hash)
    except ValueError:
        return False

    provided = hashlib.sha256(secret.encode("utf-8")).digest()
    return hmac.compare_digest(provided, stored_bytes)
