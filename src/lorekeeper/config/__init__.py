"""配置模块。"""

from lorekeeper.config.settings import (
    AppConfig,
    EmbeddingConfig,
    ModelConfig,
    PipelineConfig,
    RetrievalConfig,
    ToolConfig,
    VectorStoreConfig,
    load_config,
)

__all__ = [
    "AppConfig",
    "EmbeddingConfig",
    "ModelConfig",
    "PipelineConfig",
    "RetrievalConfig",
    "ToolConfig",
    "VectorStoreConfig",
    "load_config",
]
