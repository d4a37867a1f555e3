"""Load workflow definitions from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Union

import yaml
from pydantic import ValidationError

from .dag import validate_workflow
from .errors import DefinitionError
from .model import Workflow
from .schema import WorkflowSpec


def workflow_from_dict(raw: Any, source: str = "<dict>") -> Workflow:
    """
    Validate a parsed document and convert it to a Workflow.

    Raises:
        DefinitionError: if the document is malformed or the job graph is invalid
    """
    if not isinstance(raw, dict):
        raise DefinitionError(f"{source}: workflow document must be a mapping, got {type(raw).__name__}")

    # YAML 1.1 reads a bare `on` key as boolean True
    if True in raw and "on" not in raw:
        raw = dict(raw)
        raw["on"] = raw.pop(True)

    try:
        spec = WorkflowSpec.model_validate(raw)
        workflow = spec.to_workflow()
    except (ValidationError, ValueError) as e:
        raise DefinitionError(f"Invalid workflow definition in {source}: {e}") from e

    validate_workflow(workflow)
    return workflow


def load_yaml_text(text: str, source: str = "<string>") -> Workflow:
    try:
        raw: Dict[str, Any] = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Malformed YAML in {source}: {e}") from e
    return workflow_from_dict(raw, source)


def load_yaml(path: Union[str, Path]) -> Workflow:
    """
    Load a workflow from a YAML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        DefinitionError: If the workflow is invalid
    """
    yaml_path = Path(path)
    if not yaml_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {yaml_path}")

    with open(yaml_path, "r", encoding="utf-8") as f:
        return load_yaml_text(f.read(), str(yaml_path))
