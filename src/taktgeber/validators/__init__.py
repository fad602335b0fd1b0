"""
Resource validators

Whitelist gates for actions that reach outside the system.
"""

import logging
from typing import Optional

from ..config import ServiceConfig
from .base import ResourceValidator, ValidationContext, ValidationResult
from .phone import PhoneNumberValidator
from .registry import ValidatorRegistry, validator_registry

logger = logging.getLogger(__name__)


def initialize_validators(
    config: Optional[ServiceConfig] = None,
    registry: Optional[ValidatorRegistry] = None,
) -> ValidatorRegistry:
    """Register the built-in validators; call once at startup"""
    config = config or ServiceConfig()
    registry = registry or validator_registry

    logger.info("Initializing validators...")
    registry.register(PhoneNumberValidator(
        whitelists=config.whitelists,
        country_code=config.phone_country_code,
    ))

    stats = registry.get_stats()
    logger.info(f"Validators initialized: {stats['total_validators']}")
    return registry


__all__ = [
    'ResourceValidator',
    'ValidationContext',
    'ValidationResult',
    'ValidatorRegistry',
    'PhoneNumberValidator',
    'validator_registry',
    'initialize_validators',
]
