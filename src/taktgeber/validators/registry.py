"""
Validator Registry

Maps action names to their resource validators and gates action execution.
Actions without a registered validator are allowed.
"""

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import ActionDeniedError
from .base import ResourceValidator, ValidationContext, ValidationResult

logger = logging.getLogger(__name__)


class ValidatorRegistry:
    """Registry of resource validators keyed by action name"""

    def __init__(self):
        self._validators: Dict[str, ResourceValidator] = {}

    def register(self, validator: ResourceValidator) -> None:
        """Register a validator, replacing any existing one for the same action"""
        if validator.action_name in self._validators:
            logger.warning(f"Validator for {validator.action_name} already registered, overwriting")

        self._validators[validator.action_name] = validator
        logger.info(f"Registered validator for {validator.action_name} (resource: {validator.resource_type})")

    def get_validator(self, action_name: str) -> Optional[ResourceValidator]:
        return self._validators.get(action_name)

    def has_validator(self, action_name: str) -> bool:
        return action_name in self._validators

    def get_all_validators(self) -> List[ResourceValidator]:
        return list(self._validators.values())

    async def validate(self, action_name: str, resource: str, context: ValidationContext) -> ValidationResult:
        """Validate a resource for an action; unguarded actions are allowed"""
        validator = self._validators.get(action_name)
        if validator is None:
            logger.debug(f"No validator for {action_name}, allowing by default")
            return ValidationResult(valid=True)

        return await validator.validate(resource, context)

    async def get_whitelist(self, action_name: str, actor_id: str) -> List[str]:
        """Whitelist of an actor for an action; empty when the action is unguarded"""
        validator = self._validators.get(action_name)
        if validator is None:
            return []
        return await validator.get_whitelist(actor_id)

    async def execute(
        self,
        action_name: str,
        resource: str,
        context: ValidationContext,
        fn: Callable[..., Any],
        *args,
        **kwargs,
    ) -> Any:
        """
        Validate, then run ``fn(*args, **kwargs)``

        Returns None without calling ``fn`` in dry-run mode.

        Raises:
            ActionDeniedError: the resource failed validation
        """
        result = await self.validate(action_name, resource, context)
        if not result.valid:
            raise ActionDeniedError(action_name, result)

        if context.dry_run:
            logger.info(f"Dry run: skipping {action_name} for {resource}")
            return None

        outcome = fn(*args, **kwargs)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def get_stats(self) -> Dict[str, Any]:
        """Summary of registered validators"""
        return {
            'total_validators': len(self._validators),
            'validators': [
                {'action_name': v.action_name, 'resource_type': v.resource_type}
                for v in self._validators.values()
            ],
        }


# Global registry instance
validator_registry = ValidatorRegistry()
