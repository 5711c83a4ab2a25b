"""模型与向量化实例的构造。"""

from __future__ import annotations

import logging

from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel

from lorekeeper.config.settings import EmbeddingConfig, ModelConfig

logger = logging.getLogger(__name__)


def init_chat_model_from_config(model_config: ModelConfig) -> BaseChatModel:
    """根据配置初始化 LLM。"""
    provider = model_config.provider.strip().lower()

    if provider == "google":
        from langchain_google_genai import ChatGoogleGenerativeAI

        kwargs: dict = {
            "model": model_config.model_name,
            "temperature": model_config.temperature,
            "max_output_tokens": model_config.max_tokens,
        }
        if model_config.api_key:
            kwargs["google_api_key"] = model_config.api_key
        return ChatGoogleGenerativeAI(**kwargs)
    elif provider == "openai":
        from langchain_openai import ChatOpenAI

        kwargs = {
            "model": model_config.model_name,
            "temperature": model_config.temperature,
            "max_tokens": model_config.max_tokens,
        }
        if model_config.api_key:
            kwargs["api_key"] = model_config.api_key
        return ChatOpenAI(**kwargs)
    else:
        # 通过 langchain 的通用接口
        from langchain.chat_models import init_chat_model

        return init_chat_model(
            f"{provider}:{model_config.model_name}",
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
        )


def init_embeddings_from_config(embedding_config: EmbeddingConfig) -> Embeddings | None:
    """根据配置初始化 embedding 模型。provider 为空或 "none" 时返回 None（向量能力关闭）。"""
    provider = embedding_config.provider.strip().lower()
    if provider in ("", "none", "disabled"):
        logger.info("未配置 embedding 提供商，向量能力关闭")
        return None

    if provider == "openai":
        from langchain_openai import OpenAIEmbeddings

        return OpenAIEmbeddings(model=embedding_config.model_name)
    elif provider == "google":
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        return GoogleGenerativeAIEmbeddings(model=embedding_config.model_name)
    else:
        from langchain.embeddings import init_embeddings

        return init_embeddings(f"{provider}:{embedding_config.model_name}")


class ChatModelFactory:
    """按提供商名称解析聊天模型。

    同一工厂内按 (provider, model, temperature, max_tokens) 缓存实例；
    请求未指定 provider/model 时使用默认配置。
    """

    def __init__(self, default_config: ModelConfig | None = None):
        self.default_config = default_config or ModelConfig()
        self._cache: dict[tuple, BaseChatModel] = {}

    def resolve_config(
        self,
        provider: str = "",
        model: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelConfig:
        base = self.default_config
        provider = provider.strip() or base.provider
        return ModelConfig(
            provider=provider,
            model_name=model.strip() or base.model_name,
            temperature=base.temperature if temperature is None else temperature,
            max_tokens=base.max_tokens if max_tokens is None else max_tokens,
            api_key=base.api_key,
        )

    def get(
        self,
        provider: str = "",
        model: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> BaseChatModel:
        cfg = self.resolve_config(provider, model, temperature, max_tokens)
        key = (cfg.provider.lower(), cfg.model_name, cfg.temperature, cfg.max_tokens)
        if key not in self._cache:
            logger.debug("初始化模型: %s/%s", cfg.provider, cfg.model_name)
            self._cache[key] = init_chat_model_from_config(cfg)
        return self._cache[key]
