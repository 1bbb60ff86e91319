"""
Toolchat-Agent - streaming chat agent with tool calling.
"""

__version__ = "1.0.0"
