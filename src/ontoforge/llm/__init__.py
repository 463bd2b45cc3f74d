"""
LLM collaborator: HTTP client and response parsing.
"""

from ontoforge.llm.client import LLMClient, OllamaClient
from ontoforge.llm.json_response import parse_llm_json, strip_code_fences, validate_shape

__all__ = [
    "LLMClient",
    "OllamaClient",
    "parse_llm_json",
    "strip_code_fences",
    "validate_shape",
]
