from lorekeeper.llm.errors import LLMErrorKind, classify_llm_error
from lorekeeper.llm.factory import (
    ChatModelFactory,
    init_chat_model_from_config,
    init_embeddings_from_config,
)

__all__ = [
    "ChatModelFactory",
    "LLMErrorKind",
    "classify_llm_error",
    "init_chat_model_from_config",
    "init_embeddings_from_config",
]
