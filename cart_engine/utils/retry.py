# cart_engine/utils/retry.py
from tenacity import retry, stop_after_attempt, wait_exponential, wait_random, retry_if_exception_type
import requests
import redis

from cart_engine.domain.errors import ConflictError
from cart_engine.utils.settings import CART_CONFLICT_RETRIES


def http_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(requests.RequestException),
    )


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(redis.RedisError),
    )


def conflict_retry():
    #optimistic locking - cala pipeline od nowa na swiezym koszyku
    return retry(
        reraise=True,
        stop=stop_after_attempt(CART_CONFLICT_RETRIES),
        wait=wait_random(min=0, max=0.05),
        retry=retry_if_exception_type(ConflictError),
    )
