"""Explicit registry mapping workflow and context identities to definitions.

Hosts populate a :class:`DefinitionRegistry` at startup and hand it to the
persistent engine. Persisted instances only store a descriptor string, so a
restarted process can rebuild the definition and the context type from the
same registrations.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Tuple, Union

from .definition import WorkflowDefinition
from .errors import WorkflowConfigurationError

logger = logging.getLogger(__name__)

DefinitionFactory = Callable[[], WorkflowDefinition]

DESCRIPTOR_SEPARATOR = "|"


def type_id(context_type: type) -> str:
    """Stable identity for a context class: ``module.QualName``."""
    return f"{context_type.__module__}.{context_type.__qualname__}"


def make_descriptor(workflow_id: str, context_type_id: str) -> str:
    return f"{workflow_id}{DESCRIPTOR_SEPARATOR}{context_type_id}"


def parse_descriptor(descriptor: str) -> Tuple[str, str]:
    workflow_id, sep, context_type_id = descriptor.rpartition(DESCRIPTOR_SEPARATOR)
    if not sep or not workflow_id or not context_type_id:
        raise WorkflowConfigurationError(f"Malformed definition descriptor {descriptor!r}")
    return workflow_id, context_type_id


class DefinitionRegistry:
    """Map ``(workflow_id, context_type_id)`` pairs to definition factories."""

    def __init__(self) -> None:
        self._factories: Dict[Tuple[str, str], DefinitionFactory] = {}
        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        self._context_types: Dict[str, type] = {}

    def register(
        self,
        definition: Union[WorkflowDefinition, DefinitionFactory],
        context_type: type,
        workflow_id: Optional[str] = None,
        context_type_id: Optional[str] = None,
    ) -> str:
        """Register a definition (or a zero-argument factory) and return its descriptor.

        A factory is invoked lazily on first lookup; ``workflow_id`` is then
        required so the key is known without building the definition.
        """

        if isinstance(definition, WorkflowDefinition):
            key_workflow_id = workflow_id or definition.workflow_id
            if key_workflow_id != definition.workflow_id:
                raise WorkflowConfigurationError(
                    f"Workflow id {key_workflow_id!r} does not match definition "
                    f"{definition.workflow_id!r}"
                )
        elif callable(definition):
            if not workflow_id:
                raise WorkflowConfigurationError(
                    "workflow_id is required when registering a definition factory"
                )
            key_workflow_id = workflow_id
        else:
            raise WorkflowConfigurationError(f"Cannot register {definition!r} as a workflow")

        ctx_id = context_type_id or type_id(context_type)
        known = self._context_types.get(ctx_id)
        if known is not None and known is not context_type:
            raise WorkflowConfigurationError(
                f"Context type id {ctx_id!r} is already bound to {known!r}"
            )
        key = (key_workflow_id, ctx_id)
        if key in self._factories:
            raise WorkflowConfigurationError(
                f"Workflow {key_workflow_id!r} is already registered for {ctx_id!r}"
            )

        if isinstance(definition, WorkflowDefinition):
            self._definitions[key] = definition
            self._factories[key] = lambda: definition
        else:
            self._factories[key] = definition
        self._context_types[ctx_id] = context_type
        logger.debug(f"Registered workflow {key_workflow_id} for context {ctx_id}")
        return make_descriptor(*key)

    def is_registered(self, workflow_id: str, context_type: type) -> bool:
        return (workflow_id, self.context_type_id(context_type)) in self._factories

    def context_type_id(self, context_type: type) -> str:
        for ctx_id, registered in self._context_types.items():
            if registered is context_type:
                return ctx_id
        return type_id(context_type)

    def descriptor_for(self, definition: WorkflowDefinition, context_type: type) -> str:
        """Return the descriptor for a registered definition.

        Raises :class:`WorkflowConfigurationError` when the pair is unknown.
        """

        ctx_id = self.context_type_id(context_type)
        key = (definition.workflow_id, ctx_id)
        if key not in self._factories:
            raise WorkflowConfigurationError(
                f"Workflow {definition.workflow_id!r} is not registered for context {ctx_id!r}"
            )
        return make_descriptor(*key)

    def resolve(self, descriptor: str) -> WorkflowDefinition:
        key = parse_descriptor(descriptor)
        cached = self._definitions.get(key)
        if cached is not None:
            return cached
        factory = self._factories.get(key)
        if factory is None:
            raise WorkflowConfigurationError(f"No workflow registered for {descriptor!r}")
        definition = factory()
        if not isinstance(definition, WorkflowDefinition):
            raise WorkflowConfigurationError(
                f"Factory for {descriptor!r} returned {type(definition).__name__}"
            )
        if definition.workflow_id != key[0]:
            raise WorkflowConfigurationError(
                f"Factory for {descriptor!r} built workflow {definition.workflow_id!r}"
            )
        self._definitions[key] = definition
        return definition

    def context_type(self, context_type_id: str) -> type:
        try:
            return self._context_types[context_type_id]
        except KeyError as exc:
            raise WorkflowConfigurationError(
                f"Context type {context_type_id!r} is not registered"
            ) from exc

    def find_context_type(self, context_type_id: str) -> Optional[type]:
        return self._context_types.get(context_type_id)

    def __len__(self) -> int:
        return len(self._factories)


__all__ = [
    "DefinitionRegistry",
    "make_descriptor",
    "parse_descriptor",
    "type_id",
]
