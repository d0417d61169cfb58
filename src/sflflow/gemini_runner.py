# ============================================================================
#  File: gemini_runner.py
#  Purpose: Reference LLM runner backed by Google Gemini
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
from typing import Any, Dict, List, Optional

import google.generativeai as genai
from google.generativeai.types import (
    BlockedPromptException,
    GenerationConfigType,
    StopCandidateException,
)
from loguru import logger

from sflflow.config import DEFAULT_MODEL
from sflflow.errors import LLMRunnerError
from sflflow.models import AgentConfig
from sflflow.runners import GroundedResponse, ImageInput, LLMResponse

GROUNDING_TOOL = "google_search_retrieval"
#
# ============================================================================
# SECTION 2: Class Definition - GeminiRunner
# ============================================================================
#
class GeminiRunner:
    """
    LLM runner using the google-generativeai SDK.

    Model parameters come from the task's AgentConfig; the model defaults to
    `default_model` when the task does not name one.
    """

    def __init__(self, api_key: Optional[str] = None, default_model: str = DEFAULT_MODEL):
        self.default_model = default_model
        if api_key:
            genai.configure(api_key=api_key)
        else:
            logger.warning("GeminiRunner created without an API key; calls will fail until one is configured")

    # ========================================================================
    # Async Function 2.1: complete
    # ========================================================================
    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        config: Optional[AgentConfig] = None,
        image: Optional[ImageInput] = None,
    ) -> LLMResponse:
        """
        Single completion, optionally with one inline image.

        Args:
            prompt: Resolved prompt text
            system_instruction: Optional system instruction
            config: Task model parameters
            image: Optional decoded image

        Returns:
            LLMResponse with the text and token usage
        """
        contents: List[Any] = []
        if image is not None:
            contents.append({"mime_type": image.mime_type, "data": image.data})
        contents.append(prompt)

        response = await self._generate(contents, system_instruction, config)
        return LLMResponse(text=_response_text(response), usage=_usage(response))

    # ========================================================================
    # Async Function 2.2: complete_grounded
    # ========================================================================
    async def complete_grounded(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        config: Optional[AgentConfig] = None,
    ) -> GroundedResponse:
        """Completion with Google Search grounding; surfaces the web sources."""
        response = await self._generate([prompt], system_instruction, config, tools=GROUNDING_TOOL)

        sources: List[Dict[str, Any]] = []
        for candidate in getattr(response, "candidates", None) or []:
            metadata = getattr(candidate, "grounding_metadata", None)
            for chunk in getattr(metadata, "grounding_chunks", None) or []:
                web = getattr(chunk, "web", None)
                uri = getattr(web, "uri", None)
                if uri:
                    sources.append({"uri": uri, "title": getattr(web, "title", "") or ""})
        return GroundedResponse(text=_response_text(response), sources=sources)

    async def _generate(self, contents, system_instruction, config, tools=None):
        model_name = (config.model if config and config.model else None) or self.default_model
        generation_config: GenerationConfigType = _generation_config(config)

        logger.info(f"Sending prompt to LLM model: {model_name}")
        logger.debug(f"Prompt preview: {str(contents[-1])[:200]}...")
        try:
            model = genai.GenerativeModel(model_name, system_instruction=system_instruction or None)
            return await model.generate_content_async(
                contents, generation_config=generation_config, tools=tools
            )
        except (StopCandidateException, BlockedPromptException) as e:
            raise LLMRunnerError(f"LLM response blocked: {str(e)}", retryable=False) from e
        except Exception as e:
            logger.exception(f"LLM communication error: {str(e)}")
            raise LLMRunnerError(f"LLM communication error: {str(e)}") from e
#
# ============================================================================
# SECTION 3: Helpers
# ============================================================================
#
def _generation_config(config: Optional[AgentConfig]) -> Dict[str, Any]:
    if config is None:
        return {}
    params = {
        "temperature": config.temperature,
        "top_k": config.top_k,
        "top_p": config.top_p,
    }
    return {key: value for key, value in params.items() if value is not None}


def _response_text(response) -> str:
    try:
        return response.text
    except ValueError as e:
        # No text part (e.g. finish reason SAFETY)
        raise LLMRunnerError(f"LLM returned no text: {str(e)}", retryable=False) from e


def _usage(response) -> Optional[Dict[str, Any]]:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None
    return {
        "promptTokens": getattr(usage, "prompt_token_count", None),
        "completionTokens": getattr(usage, "candidates_token_count", None),
        "totalTokens": getattr(usage, "total_token_count", None),
    }

#
#
## END: gemini_runner.py
