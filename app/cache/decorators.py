import inspect
from functools import wraps
from typing import Callable


def _dump(value):
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_dump(item) for item in value]
    return value


def _key_for(signature: inspect.Signature, key_builder: Callable[..., str], args, kwargs) -> str:
    bound = signature.bind(*args, **kwargs)
    bound.apply_defaults()
    return key_builder(**bound.arguments)


def read_through(key_builder: Callable[..., str], ttl: int = None):
    """
    Decorator for async service methods. The instance must expose the
    CacheStore as `self.cache`; key_builder receives the bound arguments
    by name.
    Example:
      @read_through(lambda owner_id, **_: f"tasks:{owner_id}")
      async def get_tasks(self, owner_id): ...

    Pydantic models are cached (and returned) in JSON form, so a hit and a
    miss hand back the same shape.
    """

    def decorator(fn: Callable):
        signature = inspect.signature(fn)

        @wraps(fn)
        async def wrapper(*args, **kwargs):
            key = _key_for(signature, key_builder, args, kwargs)
            cache = args[0].cache

            # loader closure calls the original function
            async def loader():
                return _dump(await fn(*args, **kwargs))

            return await cache.get(key, loader=loader, ttl=ttl)

        return wrapper

    return decorator


def invalidates(hook: str = "invalidate"):
    """
    Call the instance's `hook` method after the wrapped write succeeds.

    The hook receives the wrapped call's arguments that match its own
    parameters by name.
    Example:
      @invalidates()
      async def create_task(self, task_data, owner_id): ...
      # then awaits self.invalidate(owner_id=owner_id)

    Nothing is invalidated when the write raises. The hook runs after the
    write has committed, so any miss that follows it loads post-write data.
    """

    def decorator(fn: Callable):
        signature = inspect.signature(fn)

        @wraps(fn)
        async def wrapper(*args, **kwargs):
            bound = signature.bind(*args, **kwargs)
            bound.apply_defaults()

            result = await fn(*args, **kwargs)

            invalidate = getattr(args[0], hook)
            accepted = inspect.signature(invalidate).parameters
            await invalidate(
                **{name: value for name, value in bound.arguments.items() if name in accepted}
            )
            return result

        return wrapper

    return decorator
