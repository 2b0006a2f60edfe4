"""
Models for declared build parameters and their resolved values.
"""
import hashlib
import json
from enum import Enum
from typing import Dict, Iterable, Optional
from pydantic import BaseModel, ConfigDict


class ValueSource(str, Enum):
    """
    Where a resolved parameter value came from, highest precedence first.
    """
    ARGUMENT = "argument"
    ENVIRONMENT = "environment"
    CONFIG_FILE = "config-file"
    DEFAULT = "default"


class ParameterDeclaration(BaseModel):
    """
    A build parameter the pipeline knows about.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    default: Optional[str] = None
    required: bool = False
    description: str = ""


class BuildConfig(BaseModel):
    """
    The immutable, fully resolved set of build parameters.
    """
    model_config = ConfigDict(frozen=True)

    values: Dict[str, str] = {}
    sources: Dict[str, ValueSource] = {}

    def __getitem__(self, name: str) -> str:
        return self.values[name]

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def as_dict(self) -> Dict[str, str]:
        """Returns a copy of the values safe to hand to interpolation."""
        return dict(self.values)

    def subset(self, names: Iterable[str]) -> Dict[str, str]:
        """
        Returns the resolved values for the given names, sorted by name.
        Names without a value are left out.
        """
        return {n: self.values[n] for n in sorted(set(names)) if n in self.values}

    def subset_digest(self, names: Iterable[str]) -> str:
        """Hash of the config subset read by a set of steps."""
        payload = json.dumps(self.subset(names), sort_keys=True, separators=(",", ":"))
        return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()
