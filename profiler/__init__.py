"""Profiler capabilities driven by the session controller."""

from profiler.sampler import StackSampler, fold_stack

__all__ = ["StackSampler", "fold_stack"]
