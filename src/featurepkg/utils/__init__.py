"""Utilities for featurepkg."""

from featurepkg.utils.subprocess_executor import SubprocessExecutor

__all__ = ["SubprocessExecutor"]
