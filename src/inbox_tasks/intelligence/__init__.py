"""Classification of cleaned emails and validation of the model output."""

from .classifier import EmailClassifier, decode_classification
from .llm import OllamaClient, OpenAICompatibleClient, build_llm_client
from .mapper import ResponseMapper, TaskCandidate

__all__ = [
    "EmailClassifier",
    "OllamaClient",
    "OpenAICompatibleClient",
    "ResponseMapper",
    "TaskCandidate",
    "build_llm_client",
    "decode_classification",
]
