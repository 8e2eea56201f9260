from .diff import PerformanceDiffEngine

__all__ = ["PerformanceDiffEngine"]
