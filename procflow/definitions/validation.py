"""Structural checks run before a definition may be activated or started."""

from __future__ import annotations

from typing import List

from ..errors import (
    AmbiguousStartNode,
    DanglingEdge,
    DefinitionValidationError,
    DuplicateNodeId,
    EmptyDefinition,
    NoStartNode,
    ProcessDefinitionNotInstantiable,
)
from .models import NodeType, ProcessDefinition


def find_problems(definition: ProcessDefinition) -> List[DefinitionValidationError]:
    """Return every structural problem in ``definition``, in check order."""
    if not definition.nodes:
        return [EmptyDefinition(definition.id)]

    problems: List[DefinitionValidationError] = []

    seen: set[str] = set()
    for node in definition.nodes:
        if node.id in seen:
            problems.append(DuplicateNodeId(node.id, definition.id))
        seen.add(node.id)

    starts = [node.id for node in definition.nodes if node.type is NodeType.START]
    if not starts:
        problems.append(NoStartNode(definition.id))
    elif len(starts) > 1:
        problems.append(AmbiguousStartNode(starts, definition.id))

    for node in definition.nodes:
        for target in node.connections:
            if target not in seen:
                problems.append(DanglingEdge(node.id, target, definition.id))

    return problems


def validate_definition(definition: ProcessDefinition) -> None:
    """Raise the first structural problem found in ``definition``."""
    problems = find_problems(definition)
    if problems:
        raise problems[0]


def ensure_instantiable(definition: ProcessDefinition) -> None:
    """Raise :class:`ProcessDefinitionNotInstantiable` unless ``definition`` can start."""
    if not definition.is_active:
        raise ProcessDefinitionNotInstantiable(definition.id, "definition is not active")
    try:
        validate_definition(definition)
    except DefinitionValidationError as exc:
        raise ProcessDefinitionNotInstantiable(definition.id, str(exc)) from exc
