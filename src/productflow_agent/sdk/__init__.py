"""
SDK glue that wraps the OpenAI-compatible chat completions API.

Every stage of a run talks to the model through ``ModelInvoker.invoke`` so
tests and alternative gateways can substitute their own invoker.
"""

from .openai_client import Message, ModelInvoker, OpenAIClient, OpenAIClientFactory, read_choice_text

__all__ = ["Message", "ModelInvoker", "OpenAIClient", "OpenAIClientFactory", "read_choice_text"]
