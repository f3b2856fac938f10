"""Tool descriptors and helpers."""

from .base import FunctionTool, Tool, ToolCallbacks, ToolDefinition, parse_arguments

__all__ = ["Tool", "FunctionTool", "ToolDefinition", "ToolCallbacks", "parse_arguments"]
