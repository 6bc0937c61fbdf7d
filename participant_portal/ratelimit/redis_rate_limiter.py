"""
Rate limiter usando Redis como backend.
Compartilha a janela de tentativas entre vários processos/instâncias da API.
"""
import hashlib
import logging
import math
import uuid
from datetime import timezone
from typing import Optional
from redis import Redis
from redis.exceptions import RedisError
from ..core.clock import Clock, utcnow
from ..core.rate_limiter import RateLimitDecision

logger = logging.getLogger(__name__)


class RedisRateLimiter:
    """
    Janela deslizante em um sorted set por chave: ratelimit:{sha256(chave)}
    (score = timestamp da falha). Com TTL igual à janela para expirar chaves ociosas.

    Falhas de Redis não bloqueiam o participante: o limitador é consultivo
    e o bloqueio por participante continua valendo.
    """

    def __init__(
        self,
        redis_url: str,
        max_attempts: int = 6,
        window_seconds: int = 600,
        clock: Clock = utcnow,
        key_prefix: str = "portal:ratelimit:",
        client: Optional[Redis] = None,
    ) -> None:
        """
        Inicializa o limitador Redis.

        Args:
            redis_url: URL de conexão Redis (ex: redis://localhost:6379/0)
            max_attempts: Falhas permitidas dentro da janela
            window_seconds: Tamanho da janela deslizante
            clock: Relógio (UTC sem tzinfo)
            key_prefix: Prefixo das chaves no Redis
            client: Cliente já construído (testes)
        """
        if max_attempts < 1 or window_seconds < 1:
            raise ValueError("max_attempts e window_seconds devem ser >= 1")
        self._redis = client if client is not None else Redis.from_url(redis_url, decode_responses=False)
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._clock = clock
        self._key_prefix = key_prefix

        try:
            self._redis.ping()
            logger.info(
                f"RedisRateLimiter inicializado: max_attempts={max_attempts}, "
                f"window={window_seconds}s"
            )
        except RedisError as e:
            logger.error(f"Erro ao conectar ao Redis: {e}")
            raise

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def _redis_key(self, key: str) -> str:
        # Código de acesso e IP não ficam em claro no Redis
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return f"{self._key_prefix}{digest}"

    def _now_ts(self) -> float:
        return self._clock().replace(tzinfo=timezone.utc).timestamp()

    def is_limited(self, key: str) -> RateLimitDecision:
        redis_key = self._redis_key(key)
        now_ts = self._now_ts()
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", now_ts - self._window_seconds)
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            _, count, oldest = pipe.execute()
        except RedisError as e:
            logger.error(f"Erro ao consultar rate limit no Redis: error={e}")
            return RateLimitDecision(False, 0)

        if count < self._max_attempts or not oldest:
            return RateLimitDecision(False, 0)

        oldest_ts = float(oldest[0][1])
        retry_after = max(1, math.ceil(self._window_seconds - (now_ts - oldest_ts)))
        logger.info(f"Rate limit atingido (Redis): retry_after={retry_after}s")
        return RateLimitDecision(True, retry_after)

    def register_failure(self, key: str) -> None:
        redis_key = self._redis_key(key)
        now_ts = self._now_ts()
        member = f"{now_ts:.6f}:{uuid.uuid4().hex}"
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", now_ts - self._window_seconds)
            pipe.zadd(redis_key, {member: now_ts})
            pipe.expire(redis_key, self._window_seconds)
            pipe.execute()
        except RedisError as e:
            logger.error(f"Erro ao registrar falha no Redis: error={e}")

    def reset(self, key: str) -> None:
        try:
            self._redis.delete(self._redis_key(key))
        except RedisError as e:
            logger.error(f"Erro ao limpar rate limit no Redis: error={e}")
