# ============================================================================
#  File: models.py
#  Purpose: Workflow, task and linked-prompt document models
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]
#
# ============================================================================
# SECTION 2: Enumerations
# ============================================================================
# Class 2.1: TaskType
# ============================================================================
#
class TaskType(str, Enum):
    """The kinds of task a workflow can contain."""

    DATA_INPUT = "DATA_INPUT"
    GEMINI_PROMPT = "GEMINI_PROMPT"
    IMAGE_ANALYSIS = "IMAGE_ANALYSIS"
    TEXT_MANIPULATION = "TEXT_MANIPULATION"
    DISPLAY_CHART = "DISPLAY_CHART"
    GEMINI_GROUNDED = "GEMINI_GROUNDED"
    SIMULATE_PROCESS = "SIMULATE_PROCESS"

#
# ============================================================================
# SECTION 3: Document Models
# ============================================================================
# Class 3.1: DocumentModel
# ============================================================================
#
class DocumentModel(BaseModel):
    """camelCase on the wire, snake_case in Python; unknown keys are ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


class AgentConfig(DocumentModel):
    """Model parameters passed to the LLM runner."""

    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_k: Optional[int] = Field(default=None, ge=1, le=40)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    system_instruction: Optional[str] = None
#
# ============================================================================
# Class 3.2: Task variants
# ============================================================================
#
class TaskBase(DocumentModel):
    """Fields shared by every task variant."""

    id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)
    dependencies: List[NonEmptyStr] = Field(default_factory=list)
    input_keys: List[NonEmptyStr] = Field(default_factory=list)
    output_key: str = Field(min_length=1, max_length=50)
    position_x: Optional[float] = None
    position_y: Optional[float] = None


class DataInputTask(TaskBase):
    type: Literal["DATA_INPUT"]
    static_value: Any


class LLMTask(TaskBase):
    """Shared shape of the three Gemini-backed variants."""

    prompt_template: Optional[str] = None
    prompt_id: Optional[str] = None
    agent_config: Optional[AgentConfig] = None

    @model_validator(mode="after")
    def _require_prompt_source(self):
        if not self.prompt_template and not self.prompt_id:
            raise PydanticCustomError(
                "prompt_source_missing",
                "required",
                {"task_type": self.type, "field": "promptTemplate"},
            )
        return self


class GeminiPromptTask(LLMTask):
    type: Literal["GEMINI_PROMPT"]


class GroundedPromptTask(LLMTask):
    type: Literal["GEMINI_GROUNDED"]


class ImageAnalysisTask(LLMTask):
    type: Literal["IMAGE_ANALYSIS"]


class TextManipulationTask(TaskBase):
    type: Literal["TEXT_MANIPULATION"]
    function_body: str = Field(min_length=1)


class DisplayChartTask(TaskBase):
    type: Literal["DISPLAY_CHART"]
    data_key: str = Field(min_length=1)


class SimulateProcessTask(TaskBase):
    type: Literal["SIMULATE_PROCESS"]


Task = Annotated[
    Union[
        DataInputTask,
        GeminiPromptTask,
        ImageAnalysisTask,
        TextManipulationTask,
        DisplayChartTask,
        GroundedPromptTask,
        SimulateProcessTask,
    ],
    Field(discriminator="type"),
]
#
# ============================================================================
# Class 3.3: Workflow
# ============================================================================
#
class Workflow(DocumentModel):
    """A validated task graph. Treated as immutable once accepted."""

    id: Optional[str] = None
    name: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=1000)
    tasks: List[Task] = Field(min_length=1, max_length=50)
#
# ============================================================================
# SECTION 4: Linked Prompt (SFL) Models
# ============================================================================
#
class SFLField(DocumentModel):
    topic: str = ""
    task_type: str = ""
    domain_specifics: str = ""
    keywords: str = ""


class SFLTenor(DocumentModel):
    ai_persona: str = ""
    target_audience: List[str] = Field(default_factory=list)
    desired_tone: str = ""
    interpersonal_stance: str = ""


class SFLMode(DocumentModel):
    output_format: str = ""
    rhetorical_structure: str = ""
    length_constraint: str = ""
    textual_directives: str = ""


class PromptDefinition(DocumentModel):
    """A stored prompt referenced by a task through `promptId`."""

    id: str
    title: str = ""
    prompt_text: str
    sfl_field: SFLField = Field(default_factory=SFLField)
    sfl_tenor: SFLTenor = Field(default_factory=SFLTenor)
    sfl_mode: SFLMode = Field(default_factory=SFLMode)
    example_output: Optional[str] = None
    notes: Optional[str] = None

#
#
## END: models.py
