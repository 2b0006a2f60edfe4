"""
Models for the pipeline file and the trigger that starts a run.
"""
import json
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from .build_config import ParameterDeclaration
from .build_step import BuildStep


class ContextRules(BaseModel):
    """
    Which files of the checkout take part in the build.
    """
    include: List[str] = ["**"]
    exclude: List[str] = []
    allow_symlinks: bool = False
    allow_special: bool = False
    use_dockerignore: bool = True


class PublishTarget(BaseModel):
    """
    Where a built image goes. Tags may contain ${NAME} placeholders.
    """
    registry: Optional[str] = None
    repository: Optional[str] = None
    tags: List[str] = []


class PipelineDefinition(BaseModel):
    """
    Complete declaration of one image pipeline.
    Equivalent to a parsed dockship.yml file.
    """
    parameters: List[ParameterDeclaration] = []
    context: ContextRules = Field(default_factory=ContextRules)
    steps: List[BuildStep] = []
    publish: PublishTarget = Field(default_factory=PublishTarget)
    base_dir: str = "."


class TriggerEvent(BaseModel):
    """
    The event raised by the CI platform: what to build, with which arguments.
    """
    source_ref: str = "."
    build_args: Dict[str, str] = {}
    revision: Optional[str] = None

    @classmethod
    def from_file(cls, path: str) -> "TriggerEvent":
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.model_validate(data)
