# ============================================================================
#  File: prompts.py
#  Purpose: Linked prompt lookup and SFL system-instruction synthesis
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

import yaml
from loguru import logger
from pydantic import ValidationError

from sflflow.models import PromptDefinition
#
# ============================================================================
# SECTION 2: Prompt Lookup Interface
# ============================================================================
#
@runtime_checkable
class PromptLookup(Protocol):
    async def get_prompt_by_id(self, prompt_id: str) -> Optional[PromptDefinition]:
        ...


# ============================================================================
# Function 2.1: build_system_instruction
# ============================================================================
def build_system_instruction(prompt: PromptDefinition) -> str:
    """
    Synthesizes a system instruction from a linked prompt's SFL metadata.

    Parts appear in a fixed order (persona, tone, audience, directives);
    empty parts are skipped.
    """
    tenor = prompt.sfl_tenor
    parts: List[str] = []
    if tenor.ai_persona:
        parts.append(f"You will act as a {tenor.ai_persona}.")
    if tenor.desired_tone:
        parts.append(f"Your tone should be {tenor.desired_tone}.")
    if tenor.target_audience:
        parts.append(f"You are writing for {', '.join(tenor.target_audience)}.")
    if prompt.sfl_mode.textual_directives:
        parts.append(f"Follow these directives: {prompt.sfl_mode.textual_directives}.")
    return " ".join(parts)
#
# ============================================================================
# SECTION 3: Prompt Libraries
# ============================================================================
# Class 3.1: InMemoryPromptLibrary
# ============================================================================
#
class InMemoryPromptLibrary:
    """Dictionary-backed prompt lookup."""

    def __init__(self, prompts: Optional[Iterable[PromptDefinition]] = None):
        self._prompts: Dict[str, PromptDefinition] = {}
        for prompt in prompts or []:
            self.add(prompt)

    def add(self, prompt: PromptDefinition) -> None:
        self._prompts[prompt.id] = prompt

    async def get_prompt_by_id(self, prompt_id: str) -> Optional[PromptDefinition]:
        return self._prompts.get(prompt_id)

    def __len__(self) -> int:
        return len(self._prompts)


# ============================================================================
# Class 3.2: YamlPromptLibrary
# ============================================================================
class YamlPromptLibrary(InMemoryPromptLibrary):
    """
    Prompt library read from a YAML or JSON file.

    The file holds either a list of prompt documents or a mapping with a
    `prompts` list. Documents use the same camelCase keys as the API.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__()
        self.reload()

    def reload(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Prompt library not found at {self.path}")

        with open(self.path, "r", encoding="utf-8") as f:
            if self.path.suffix.lower() == ".json":
                loaded = json.load(f)
            else:
                loaded = yaml.safe_load(f)

        if isinstance(loaded, dict):
            loaded = loaded.get("prompts", [])
        if not isinstance(loaded, list):
            raise ValueError(f"Prompt library {self.path} must contain a list of prompts")

        self._prompts.clear()
        for i, document in enumerate(loaded):
            try:
                self.add(PromptDefinition.model_validate(document))
            except ValidationError as e:
                raise ValueError(f"Invalid prompt #{i} in {self.path}: {e}") from e
        logger.info(f"Loaded {len(self._prompts)} linked prompt(s) from {self.path}")

#
#
## End of Script
