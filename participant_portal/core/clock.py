from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """
    Relógio padrão: UTC sem tzinfo, no mesmo formato gravado nas colunas DateTime.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
