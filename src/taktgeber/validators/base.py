"""
Base types for resource validators

A validator guards one action (for example sending a message) by checking the
resource it targets against a per-actor whitelist.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ValidationContext:
    """Who is performing an action, and how"""
    actor_id: str
    dry_run: bool = False
    extra: Optional[Dict[str, Any]] = None


@dataclass
class ValidationResult:
    """Outcome of validating one resource"""
    valid: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class ResourceValidator(ABC):
    """
    Base class for all resource validators

    Subclasses set ``action_name`` and ``resource_type`` and implement
    ``get_whitelist``; ``normalize`` may be overridden to canonicalize
    resources before comparison.
    """

    action_name: str = ""
    resource_type: str = ""

    @abstractmethod
    async def get_whitelist(self, actor_id: str) -> List[str]:
        """Normalized resources the actor may target"""
        pass

    def normalize(self, resource: str) -> str:
        """Canonical form of a resource; identity by default"""
        return resource

    async def is_allowed(self, resource: str, actor_id: str) -> bool:
        """Check whether the normalized resource is in the actor's whitelist"""
        whitelist = await self.get_whitelist(actor_id)
        return self.normalize(resource) in whitelist

    async def validate(self, resource: str, context: ValidationContext) -> ValidationResult:
        """
        Validate a resource for the context's actor

        Never raises: failures inside the validator produce an invalid result.
        """
        try:
            normalized = self.normalize(resource)
            logger.debug(
                f"Validating {self.resource_type} {normalized} for {context.actor_id} "
                f"(action={self.action_name}, dry_run={context.dry_run})"
            )

            if not await self.is_allowed(normalized, context.actor_id):
                logger.warning(
                    f"Validation failed: {self.resource_type} {normalized} not in whitelist "
                    f"for {context.actor_id} ({self.action_name})"
                )
                return ValidationResult(
                    valid=False,
                    error=f'{self.resource_type} "{normalized}" is not in whitelist for user {context.actor_id}',
                    details={
                        'resource': normalized,
                        'actor_id': context.actor_id,
                        'resource_type': self.resource_type,
                    },
                )

            if context.dry_run:
                logger.info(f"Dry-run validation passed: {normalized} for {context.actor_id} ({self.action_name})")

            return ValidationResult(valid=True)

        except Exception as e:
            logger.error(f"Validation error in {type(self).__name__} for {resource!r}: {e}")
            return ValidationResult(
                valid=False,
                error=str(e) or "Validation failed",
                details={'exception': type(e).__name__},
            )
