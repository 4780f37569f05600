"""Lens agent -- LLM turn loop with tool execution and compacting memory."""
