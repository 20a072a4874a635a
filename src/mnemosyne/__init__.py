"""
Mnemosyne: retrieval-augmented agents over a personal knowledge base.

Indexes a folder of notes into searchable chunks, retrieves the relevant
ones for a query, and drives pluggable language-model backends to answer
with that context, optionally calling tools against the notes.

Key Components:
    - retrieval: chunking, embeddings, vector stores (FAISS file / SQL), retriever
    - security: master-password key derivation and credential encryption
    - llm: uniform chat interface over OpenAI, Anthropic and Ollama backends
    - agents: agent configuration, LangGraph executor, memory and tools
    - service: facade used by the REST API and the CLI
    - tracing: Arize Phoenix observability integration

Example:
    >>> from mnemosyne.service import MnemosyneService
    >>> service = MnemosyneService.from_settings()
    >>> await service.initialize()
    >>> response = await service.execute_agent("default", "What is on my Q3 plan?")
"""

__version__ = "0.1.0"

from mnemosyne.config import settings

__all__ = [
    "__version__",
    "settings",
]
