from dataclasses import dataclass

from fastapi import Request, Response

from app.core.errors import RateLimitError
from app.ratelimit.limiter import RateLimitDecision, RateLimiter
from app.ratelimit.policies import RateLimitPolicy


@dataclass
class RateLimitTicket:
    """
    Handle returned to a route for an admitted request.

    Routes whose policy skips some outcomes report how the request ended;
    the limiter then drops the entry it recorded for it.
    """

    limiter: RateLimiter
    policy: RateLimitPolicy
    decision: RateLimitDecision

    async def report_outcome(self, success: bool) -> None:
        skip = (success and self.policy.skip_successful_requests) or (
            not success and self.policy.skip_failed_requests
        )
        if skip:
            await self.limiter.release(self.decision)


class RateLimit:
    """
    FastAPI dependency applying a named policy.
    Example:
      router = APIRouter(dependencies=[Depends(RateLimit("api"))])
    """

    def __init__(self, policy_name: str):
        self.policy_name = policy_name

    async def __call__(self, request: Request, response: Response) -> RateLimitTicket:
        limiter: RateLimiter = request.app.state.rate_limiter
        policy: RateLimitPolicy = request.app.state.rate_limit_policies[self.policy_name]

        identity = await policy.key_func(request)
        decision = await limiter.admit(identity, policy.window_ms, policy.max_requests)

        headers = decision.headers()
        if not decision.allowed:
            raise RateLimitError(policy.message, retry_after=decision.retry_after, headers=headers)

        response.headers.update(headers)
        return RateLimitTicket(limiter=limiter, policy=policy, decision=decision)
