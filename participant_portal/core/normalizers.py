"""
Funções para normalizar dados digitados pelo participante ou pelo guia.
"""
import hmac
import re
from typing import Optional

from .code_generator import ALPHABET


_NON_DIGIT = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")

FACTOR_DIGITS = 4
IDENTITY_NUMBER_LENGTH = 11


def extract_digits(raw: Optional[str]) -> str:
    """
    Mantém apenas os dígitos.

    Exemplos:
        "+90 (532) 123-45-67" → "905321234567"
        None → ""
    """
    if not raw:
        return ""
    return _NON_DIGIT.sub("", raw)


def extract_last_digits(raw: Optional[str], count: int = FACTOR_DIGITS) -> Optional[str]:
    """
    Retorna os últimos `count` dígitos ou None se não houver dígitos suficientes.
    """
    digits = extract_digits(raw)
    if len(digits) < count:
        return None
    return digits[-count:]


def normalize_access_code(raw: Optional[str]) -> str:
    """
    Normaliza o código de acesso do evento: remove espaços e hífens, caixa alta.

    Exemplos:
        " abcd-2345 " → "ABCD2345"
    """
    if not raw:
        return ""
    return raw.strip().upper().replace(" ", "").replace("-", "")


def normalize_identity_number(raw: Optional[str]) -> str:
    """
    Documento de identidade (TC Kimlik No): apenas dígitos.
    """
    return extract_digits(raw)


def normalize_checkin_code(raw: Optional[str]) -> str:
    """
    Normaliza o código de check-in digitado ou lido do QR.

    Exemplos:
        " abcd 2345 " → "ABCD2345"
        "ab-cd-23-45" → "ABCD2345"
    """
    if not raw:
        return ""
    return _NON_ALNUM.sub("", raw.strip().upper())


def is_valid_code(code: str, length: int) -> bool:
    """
    Código já normalizado: tamanho fixo e só caracteres do alfabeto sem ambiguidades.
    """
    return len(code) == length and all(ch in ALPHABET for ch in code)


def factor_matches(phone: Optional[str], supplied: Optional[str], count: int = FACTOR_DIGITS) -> bool:
    """
    Compara o fator secundário (últimos dígitos do telefone).

    Separadores e apresentação do código do país são ignorados:
    "+90 532 123 45 67" e "05321234567" terminam em "4567".
    A comparação é feita em tempo constante.
    """
    expected = extract_last_digits(phone, count)
    provided = extract_digits(supplied)
    if expected is None or len(provided) != count:
        return False
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii"))


def build_phone_hint(phone: Optional[str]) -> Optional[str]:
    """
    Dica mascarada do telefone para a tela de confirmação.

    Exemplos:
        "+90 532 123 45 67" → "+90 *** *** ** 67"
        "(11) 99938-0969" → "***0969"
    """
    digits = extract_digits(phone)
    if len(digits) < 2:
        return None

    if digits.startswith("90") and len(digits) == 12:
        return f"+90 *** *** ** {digits[-2:]}"

    last4 = digits[-4:] if len(digits) >= 4 else digits
    return f"***{last4}"


def mask_display_name(full_name: Optional[str]) -> str:
    """
    Nome exibido antes da confirmação: primeiro nome + inicial do segundo.

    Exemplos:
        "Ayşe Yılmaz Demir" → "Ayşe Y."
        "" → "Participant"
    """
    name = (full_name or "").strip()
    if not name:
        return "Participant"
    parts = name.split()
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]} {parts[1][0]}."


def mask_identifier(value: Optional[str]) -> str:
    """
    Versão parcial de um identificador para logs (primeiros 2 e últimos 2 caracteres).
    """
    if not value or len(value) <= 4:
        return "****"
    return f"{value[:2]}****{value[-2:]}"
