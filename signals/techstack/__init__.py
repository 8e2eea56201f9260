from .diff import TechStackDiffEngine

__all__ = ["TechStackDiffEngine"]
