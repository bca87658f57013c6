"""Agent implementations for the lesson generation pipeline"""

from .base import Agent, AgentExecutionError, AgentInput
from .schema_validator import SchemaValidatorAgent, SchemaValidatorInput
from .content_generator import (
    AnthropicChatBackend,
    ChatBackend,
    GenerationError,
    OpenAIChatBackend,
    StructuredContentGenerator,
)
from .asset_extractor import AssetPromptExtractor
from .asset_synthesizer import (
    AssetBackend,
    AssetGenerationError,
    ConcurrentAssetSynthesizer,
    GeneratedAsset,
    OpenAIImageBackend,
)
from .persistence import (
    FileSystemPersistenceGateway,
    InMemoryPersistenceGateway,
    PersistenceError,
    PersistenceGateway,
    StatusUpdate,
)

__all__ = [
    "Agent",
    "AgentExecutionError",
    "AgentInput",
    "SchemaValidatorAgent",
    "SchemaValidatorInput",
    "ChatBackend",
    "OpenAIChatBackend",
    "AnthropicChatBackend",
    "GenerationError",
    "StructuredContentGenerator",
    "AssetPromptExtractor",
    "AssetBackend",
    "AssetGenerationError",
    "GeneratedAsset",
    "OpenAIImageBackend",
    "ConcurrentAssetSynthesizer",
    "PersistenceGateway",
    "PersistenceError",
    "StatusUpdate",
    "InMemoryPersistenceGateway",
    "FileSystemPersistenceGateway",
]
