from .diff import FALLBACK_RATES, PricingDiffEngine, compare_regions, extract_price, to_usd

__all__ = ["FALLBACK_RATES", "PricingDiffEngine", "compare_regions", "extract_price", "to_usd"]
