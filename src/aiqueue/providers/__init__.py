from aiqueue.providers.base import (
    ChatCompletionPromptModerator,
    HttpFunctionClient,
    PromptModerator,
    ProviderClient,
    content_policy_retry,
    exponential_backoff_retry,
)
from aiqueue.providers.book_import import book_import_adapter
from aiqueue.providers.gemini import gemini_adapter
from aiqueue.providers.generic import GenericQueue
from aiqueue.providers.groq import groq_adapter
from aiqueue.providers.images import fal_adapter, imagerouter_adapter, wavespeed_adapter
from aiqueue.providers.modal import modal_adapter
from aiqueue.providers.openai import openai_adapter

__all__ = [
    "ChatCompletionPromptModerator",
    "GenericQueue",
    "HttpFunctionClient",
    "PromptModerator",
    "ProviderClient",
    "book_import_adapter",
    "content_policy_retry",
    "exponential_backoff_retry",
    "fal_adapter",
    "gemini_adapter",
    "groq_adapter",
    "imagerouter_adapter",
    "modal_adapter",
    "openai_adapter",
    "wavespeed_adapter",
]
