"""Reasoning service clients (LLM chat completion)."""
