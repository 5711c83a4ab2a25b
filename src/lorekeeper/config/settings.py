"""全局配置。"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ModelConfig(BaseModel):
    """LLM 模型配置。"""

    provider: str = Field(
        default="openai",
        description="模型提供商: 'google', 'openai', 'anthropic' 等",
    )
    model_name: str = Field(default="gpt-4o-mini", description="模型名称")
    temperature: float = Field(default=0.7, description="生成温度")
    max_tokens: int = Field(default=8192, description="最大 token 数")
    api_key: str = Field(
        default="",
        description="模型 API key（可选，优先使用环境变量）",
    )


class EmbeddingConfig(BaseModel):
    """向量化模型配置。"""

    provider: str = Field(default="openai", description="Embedding 提供商")
    model_name: str = Field(default="text-embedding-3-small", description="Embedding 模型名称")
    batch_size: int = Field(default=32, description="每批向量化的文本条数")


class VectorStoreConfig(BaseModel):
    """向量库（Chroma）配置。"""

    persist_dir: str = Field(default="", description="持久化目录；为空时使用内存库")
    collection_name: str = Field(default="story_segments", description="集合名称")


class RetrievalConfig(BaseModel):
    """索引与检索参数。"""

    chunk_size: int = Field(default=800, description="单个切片最大字符数（按码点计）")
    chunk_overlap: int = Field(default=80, description="相邻切片重叠字符数")
    max_json_leaves: int = Field(default=800, description="单个构件最多索引的 JSON 叶子数")
    default_top_k: int = Field(default=10, description="未指定时的召回条数")
    max_top_k: int = Field(default=50, description="召回条数上限")


class ToolConfig(BaseModel):
    """模型可调用工具的参数。"""

    search_default_top_k: int = Field(default=5, description="semantic_search 默认条数")
    search_max_top_k: int = Field(default=20, description="semantic_search 条数上限")
    snippet_max_chars: int = Field(default=200, description="向量命中片段的最大长度")
    substring_snippet_chars: int = Field(default=160, description="子串兜底命中片段的最大长度")


class PipelineConfig(BaseModel):
    """构件生成流水线的边界参数。"""

    max_tool_rounds: int = Field(default=4, description="最多工具调用轮数")
    max_repair_rounds: int = Field(default=2, description="每种输出模式下最多修复轮数")
    max_steps: int = Field(default=50, description="状态机最多执行步数")
    repair_raw_max_chars: int = Field(
        default=20000, description="修复提示中回显的原始输出最大长度"
    )
    model_max_retries: int = Field(default=2, description="网络类错误的重试次数")
    retry_base_delay: float = Field(default=2.0, description="重试退避基数（秒）")


class AppConfig(BaseModel):
    """lorekeeper 全局配置。"""

    # ── 模型配置 ──
    model: ModelConfig = Field(default_factory=ModelConfig, description="构件生成使用的模型")
    conflict_model: ModelConfig | None = Field(
        default=None,
        description="冲突扫描使用的模型（建议低 temperature）。若为 None 则使用 model。",
    )
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)

    # ── 检索 ──
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)

    # ── 流水线 ──
    tools: ToolConfig = Field(default_factory=ToolConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    # ── 输出配置 ──
    output_dir: str = Field(default="output", description="输出目录")


# 环境变量 -> (配置段, 字段, 类型)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "LOREKEEPER_PROVIDER": ("model", "provider", str),
    "LOREKEEPER_MODEL": ("model", "model_name", str),
    "LOREKEEPER_TEMPERATURE": ("model", "temperature", float),
    "LOREKEEPER_EMBEDDING_PROVIDER": ("embedding", "provider", str),
    "LOREKEEPER_EMBEDDING_MODEL": ("embedding", "model_name", str),
    "LOREKEEPER_CHROMA_DIR": ("vector_store", "persist_dir", str),
}


def load_config(path: str | Path | None = None) -> AppConfig:
    """加载配置：YAML 文件（可选）+ 环境变量覆盖。

    Raises:
        FileNotFoundError: 指定的配置文件不存在时。
        ValueError: 配置文件顶层不是映射时。
    """
    data: dict[str, Any] = {}
    if path:
        filepath = Path(path)
        if not filepath.exists():
            raise FileNotFoundError(f"配置文件不存在: {filepath}")
        with open(filepath, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"配置文件格式错误（顶层应为映射）: {filepath}")
        data = loaded

    for env_name, (section, field, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name, "").strip()
        if not raw:
            continue
        data.setdefault(section, {})[field] = cast(raw)
        logger.debug("环境变量覆盖配置: %s -> %s.%s", env_name, section, field)

    return AppConfig.model_validate(data)
