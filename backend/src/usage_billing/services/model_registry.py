"""AI model pricing lookups backed by an injected cache."""
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.cache import Cache
from usage_billing.cost_tables import DEFAULT_MODEL_PRICE, MODEL_PRICING, ModelPrice
from usage_billing.models.ai_model import AIModel

logger = structlog.get_logger(__name__)

CACHE_PREFIX = "model_pricing:"


class ModelRegistry:
    """
    Resolves per-million-token prices for AI models.

    Lookup order: cache, enabled ai_models row, static MODEL_PRICING, default.
    Admin writes to ai_models must call invalidate() for the change to show
    before the cache TTL expires.
    """

    def __init__(self, db: AsyncSession, cache: Cache):
        self.db = db
        self.cache = cache

    async def get_pricing(self, model_id: str) -> ModelPrice:
        """
        Get pricing for a model.

        Args:
            model_id: Model identifier (e.g. "anthropic/claude-sonnet-4.5")

        Returns:
            ModelPrice with input and output price per million tokens
        """
        key = f"{CACHE_PREFIX}{model_id}"
        cached = await self.cache.get(key)
        if cached is not None:
            return ModelPrice(Decimal(cached["input"]), Decimal(cached["output"]))

        price = await self._load(model_id)
        await self.cache.set(key, {"input": str(price.input_per_million), "output": str(price.output_per_million)})
        return price

    async def invalidate(self, model_id: str | None = None) -> int:
        """Drop cached pricing for one model, or all models when model_id is None."""
        if model_id is not None:
            return int(await self.cache.invalidate(f"{CACHE_PREFIX}{model_id}"))
        count = await self.cache.invalidate_pattern(f"{CACHE_PREFIX}*")
        logger.info("model_pricing_cache_invalidated", count=count)
        return count

    async def _load(self, model_id: str) -> ModelPrice:
        result = await self.db.execute(
            select(AIModel).where(AIModel.model_id == model_id, AIModel.is_enabled.is_(True))
        )
        model = result.scalar_one_or_none()
        if model is not None:
            return ModelPrice(Decimal(model.input_price_per_million), Decimal(model.output_price_per_million))

        if model_id in MODEL_PRICING:
            return MODEL_PRICING[model_id]

        logger.warning("model_pricing_default_used", model_id=model_id)
        return DEFAULT_MODEL_PRICE
