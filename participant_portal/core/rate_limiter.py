import itertools
import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, NamedTuple, Optional

from .clock import Clock, utcnow

logger = logging.getLogger(__name__)


class RateLimitDecision(NamedTuple):
    limited: bool
    retry_after_seconds: int


def build_attempt_key(scope: str, origin: Optional[str]) -> str:
    """
    Chave de tentativas: identidade normalizada + origem de rede.

    Exemplo:
        build_attempt_key("login:ABCD2345", "10.0.0.1") → "login:ABCD2345|10.0.0.1"
    """
    return f"{scope}|{origin or 'unknown'}"


@dataclass
class _Bucket:
    lock: threading.Lock = field(default_factory=threading.Lock)
    failures: Deque[datetime] = field(default_factory=deque)
    evicted: bool = False


class InMemoryRateLimiter:
    """
    Janela deslizante de falhas por chave, local ao processo.

    Cada chave tem seu próprio lock; o lock do registro só protege
    a criação/remoção de buckets, então chaves diferentes não se serializam.
    É mitigação de abuso, não substitui o bloqueio por participante.
    """

    def __init__(
        self,
        max_attempts: int = 6,
        window_seconds: int = 600,
        clock: Clock = utcnow,
        sweep_every: int = 1000,
    ) -> None:
        if max_attempts < 1 or window_seconds < 1:
            raise ValueError("max_attempts e window_seconds devem ser >= 1")
        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._registry_lock = threading.Lock()
        self._sweep_every = sweep_every
        self._calls = itertools.count(1)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def window_seconds(self) -> int:
        return int(self._window.total_seconds())

    def _bucket(self, key: str, create: bool) -> Optional[_Bucket]:
        # next() em itertools.count é atômico no CPython
        if next(self._calls) % self._sweep_every == 0:
            self.evict_idle()

        bucket = self._buckets.get(key)
        if create and (bucket is None or bucket.evicted):
            # O lock do registro só é usado para criar o bucket
            with self._registry_lock:
                bucket = self._buckets.get(key)
                if bucket is None or bucket.evicted:
                    bucket = _Bucket()
                    self._buckets[key] = bucket
        return bucket

    def _prune(self, bucket: _Bucket, now: datetime) -> None:
        # Chamado com bucket.lock adquirido
        while bucket.failures and now - bucket.failures[0] >= self._window:
            bucket.failures.popleft()

    def is_limited(self, key: str) -> RateLimitDecision:
        """
        Verifica se a chave atingiu o limite. Não consome tentativa.
        """
        bucket = self._bucket(key, create=False)
        if bucket is None:
            return RateLimitDecision(False, 0)

        now = self._clock()
        with bucket.lock:
            if bucket.evicted:
                return RateLimitDecision(False, 0)
            self._prune(bucket, now)
            if len(bucket.failures) < self._max_attempts:
                return RateLimitDecision(False, 0)
            oldest = bucket.failures[0]

        remaining = (self._window - (now - oldest)).total_seconds()
        retry_after = max(1, math.ceil(remaining))
        logger.info(f"Rate limit atingido: retry_after={retry_after}s")
        return RateLimitDecision(True, retry_after)

    def register_failure(self, key: str) -> None:
        while True:
            bucket = self._bucket(key, create=True)
            now = self._clock()
            with bucket.lock:
                # Bucket removido pela limpeza entre a busca e o lock: pega o novo
                if bucket.evicted:
                    continue
                self._prune(bucket, now)
                bucket.failures.append(now)
                count = len(bucket.failures)
            break
        logger.debug(f"Falha registrada no rate limiter: failures_in_window={count}")

    def reset(self, key: str) -> None:
        with self._registry_lock:
            bucket = self._buckets.pop(key, None)
        if bucket is not None:
            with bucket.lock:
                bucket.evicted = True
                bucket.failures.clear()

    def evict_idle(self) -> int:
        """
        Remove chaves sem falhas dentro da janela. Retorna quantas foram removidas.
        """
        now = self._clock()
        removed = 0
        # Nunca segura o lock do registro e o de um bucket ao mesmo tempo
        with self._registry_lock:
            snapshot = list(self._buckets.items())

        for key, bucket in snapshot:
            with bucket.lock:
                self._prune(bucket, now)
                if bucket.failures or bucket.evicted:
                    continue
                bucket.evicted = True
            with self._registry_lock:
                # Pode já ter sido substituído por um bucket novo
                if self._buckets.get(key) is bucket:
                    del self._buckets[key]
                    removed += 1

        if removed:
            logger.debug(f"Rate limiter: {removed} chaves ociosas removidas")
        return removed

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._buckets)
