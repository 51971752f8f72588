"""
LLM Package

Completion backend used by the retrieval-augmented chat service::

    from docintel.llm import ChatOpenAIBackend

    backend = ChatOpenAIBackend(api_key=settings.openai_api_key, model=settings.llm_model)
    result  = await backend.complete([SystemMessage(...), HumanMessage(...)], temperature=0.7)
"""

from docintel.llm.completion import ChatOpenAIBackend, CompletionBackend, CompletionResult

__all__ = [
    "ChatOpenAIBackend",
    "CompletionBackend",
    "CompletionResult",
]
