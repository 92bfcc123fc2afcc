"""Semantic understanding module using LLM inference."""

from .inference import InferenceClient

__all__ = ["InferenceClient"]
