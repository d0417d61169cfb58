# ============================================================================
#  File: runners.py
#  Purpose: LLM runner interface and the response types tasks consume
# ============================================================================
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sflflow.models import AgentConfig


@dataclass
class ImageInput:
    """Decoded image handed to a runner for IMAGE_ANALYSIS tasks."""
    data: bytes
    mime_type: str


@dataclass
class LLMResponse:
    text: str
    usage: Optional[Dict[str, Any]] = None


@dataclass
class GroundedResponse:
    text: str
    sources: List[Dict[str, Any]] = field(default_factory=list)

    def to_result(self) -> Dict[str, Any]:
        return {"text": self.text, "sources": list(self.sources)}


@runtime_checkable
class LLMRunner(Protocol):
    """
    Provider-agnostic completion capability.

    Implementations raise LLMRunnerError for provider or network failures;
    the worker treats those as retryable.
    """

    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        config: Optional[AgentConfig] = None,
        image: Optional[ImageInput] = None,
    ) -> LLMResponse:
        ...

    async def complete_grounded(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        config: Optional[AgentConfig] = None,
    ) -> GroundedResponse:
        ...

#
#
## End of Script
