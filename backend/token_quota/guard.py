"""
Quota Guard - Pre-execution token check for AI features

Resolves the caller's tier, then spends the feature's cost. Feature code
calls this at the execution boundary before generating anything.

Usage:
    guard = QuotaGuard(db, user)
    result = await guard.check_and_consume(user["id"], "quiz_generation", 2)

    @router.post("/quiz")
    @quota_guarded("quiz_generation", cost=2)
    async def generate_quiz(body: QuizRequest, user: dict = Depends(get_current_user)):
        ...
"""

import logging
from functools import wraps
from typing import Optional, Callable

from fastapi import HTTPException

from .authorization import authorize_owner
from .entitlement_resolver import resolve_tier
from .exceptions import QuotaError, InsufficientBalance, NotAuthenticated
from .models import ConsumeContext, ConsumeResult
from .quota_service import QuotaService, calculate_token_cost

logger = logging.getLogger(__name__)


class QuotaGuard:
    """Resolve tier and consume in one call."""

    def __init__(self, db, caller: Optional[dict]):
        self.db = db
        self.caller = caller
        self.quota_service = QuotaService(db, caller)

    async def check_and_consume(
        self,
        owner_id: str,
        feature_name: str,
        cost: Optional[int] = None,
        context: Optional[ConsumeContext] = None,
    ) -> ConsumeResult:
        """
        Spend cost tokens for feature_name at the owner's current tier.

        Without an explicit cost the price comes from the context's
        language and mode (see calculate_token_cost).

        Raises:
            InsufficientBalance: the account cannot cover the cost
            QuotaError: any other quota failure (validation, auth, lock timeout)
        """
        authorize_owner(self.caller, owner_id)
        context = context or ConsumeContext()
        if not context.feature_name:
            context = context.model_copy(update={"feature_name": feature_name})
        if cost is None:
            cost = calculate_token_cost(context.language, context.mode)

        tier = await resolve_tier(self.db, owner_id)
        result = await self.quota_service.consume(owner_id, tier, cost, context)

        if not result.success:
            raise InsufficientBalance(
                details={
                    "feature_name": feature_name,
                    "tier": tier.value,
                    "cost": cost,
                    "daily_remaining": result.daily_remaining,
                    "purchased_remaining": result.purchased_remaining,
                }
            )
        return result


def quota_guarded(feature_name: str, cost: Optional[int] = 1, db_provider: Optional[Callable] = None):
    """
    Decorator for AI-enabled route handlers.

    Spends the tokens before the handler runs and maps quota errors to
    HTTP responses (402 when the balance is short). With cost=None the
    price is taken from the handler's language and mode arguments, or
    from a request body carrying those fields.

    Note: The decorated function must have 'user' in its parameters.
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if db_provider:
                db = db_provider()
            else:
                from database import db

            user = kwargs.get('user')
            if not user:
                for arg in args:
                    if isinstance(arg, dict) and 'id' in arg:
                        user = arg
                        break

            try:
                if not user or 'id' not in user:
                    raise NotAuthenticated()
                guard = QuotaGuard(db, user)
                context = _pricing_context(kwargs) if cost is None else None
                await guard.check_and_consume(user['id'], feature_name, cost, context)
            except QuotaError as e:
                logger.info(f"Quota guard blocked {feature_name}: {e.error_code}")
                raise HTTPException(status_code=e.status_code, detail=e.to_dict())

            return await func(*args, **kwargs)

        return wrapper
    return decorator


def _pricing_context(kwargs: dict) -> ConsumeContext:
    """Pick language and mode out of handler kwargs or a request body."""
    language = kwargs.get('language')
    mode = kwargs.get('mode')
    for value in kwargs.values():
        if language is None and hasattr(value, 'language'):
            language = value.language
        if mode is None and hasattr(value, 'mode'):
            mode = value.mode
    return ConsumeContext(language=language, mode=mode)
