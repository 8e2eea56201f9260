from .diff import BrandingDiffEngine

__all__ = ["BrandingDiffEngine"]
