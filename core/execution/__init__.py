"""Swap execution boundary and paper executor."""

from core.execution.interfaces import SwapExecutor, explorer_url
from core.execution.paper import PaperFill, PaperSwapExecutor

__all__ = ["PaperFill", "PaperSwapExecutor", "SwapExecutor", "explorer_url"]
