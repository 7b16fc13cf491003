from functools import wraps
from typing import Callable

from pydantic import TypeAdapter


def cached(key_builder: Callable[..., str], adapter: TypeAdapter):
    """
    Read-through decorator for async service methods.

    The owning instance must expose ``cache`` (a CacheLayer) and
    ``cache_ttl``. key_builder receives the same args/kwargs as the method,
    minus ``self``. Values are stored in their JSON form and validated back
    through ``adapter`` on the way out, so L1 and L2 hits look the same.

    Example:
      @cached(lambda task_id: task_key(task_id), TypeAdapter(TaskRead))
      async def get(self, task_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)

            # loader closure calls the original function
            async def loader():
                value = await fn(self, *args, **kwargs)
                if value is None:
                    return None
                return adapter.dump_python(value, mode="json")

            raw = await self.cache.get_or_compute(key, self.cache_ttl, loader)
            if raw is None:
                return None
            return adapter.validate_python(raw)

        return wrapper

    return decorator


def invalidates(*key_builders: Callable[..., str]):
    """
    Drop the built keys after the wrapped mutation, before returning.

    Runs on failure too: a write that half-succeeded must not leave the
    previous value cached.
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            finally:
                for key_builder in key_builders:
                    await self.cache.invalidate(key_builder(*args, **kwargs))

        return wrapper

    return decorator
