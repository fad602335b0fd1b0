"""
Tests for resource validators and the validator registry
"""

from typing import List
from unittest.mock import AsyncMock

import pytest

from taktgeber.config import ServiceConfig
from taktgeber.core.errors import ActionDeniedError
from taktgeber.validators import (
    PhoneNumberValidator,
    ResourceValidator,
    ValidationContext,
    ValidatorRegistry,
    initialize_validators,
)

OWNER = "6281321127717"


class BrokenValidator(ResourceValidator):
    action_name = "broken_action"
    resource_type = "thing"

    async def get_whitelist(self, actor_id: str) -> List[str]:
        raise RuntimeError("whitelist backend down")


class TestPhoneNumberValidator:

    @pytest.mark.parametrize("raw, expected", [
        ("6281321127717@c.us", "6281321127717"),
        ("+62 813-2112-7717", "6281321127717"),
        ("(0813) 2112 7717", "6281321127717"),
        ("081321127717", "6281321127717"),
        ("628111222333@s.whatsapp.net", "628111222333"),
    ])
    def test_normalize(self, raw, expected):
        assert PhoneNumberValidator().normalize(raw) == expected

    def test_country_code_is_configurable(self):
        assert PhoneNumberValidator(country_code="49").normalize("0151 234") == "49151234"

    @pytest.mark.asyncio
    async def test_whitelist_contains_self_and_configured_numbers(self):
        validator = PhoneNumberValidator(whitelists={
            OWNER: ["628111222333", "+62 811 1222 333", "0899988877"],
        })

        whitelist = await validator.get_whitelist(f"{OWNER}@c.us")

        assert whitelist == [OWNER, "628111222333", "62899988877"]

    @pytest.mark.asyncio
    async def test_self_is_always_allowed(self):
        validator = PhoneNumberValidator()
        result = await validator.validate("0813-2112-7717", ValidationContext(actor_id=f"{OWNER}@c.us"))
        assert result.valid

    @pytest.mark.asyncio
    async def test_unknown_number_rejected(self):
        validator = PhoneNumberValidator(whitelists={OWNER: ["628111222333"]})

        result = await validator.validate("628999000111", ValidationContext(actor_id=OWNER))

        assert not result.valid
        assert "628999000111" in result.error
        assert result.details["resource_type"] == "phone_number"

    @pytest.mark.asyncio
    async def test_is_allowed(self):
        validator = PhoneNumberValidator(whitelists={OWNER: ["628111222333"]})

        assert await validator.is_allowed("+62 811-1222-333", OWNER)
        assert not await validator.is_allowed("628111222334", OWNER)


class TestValidatorRegistry:

    @pytest.mark.asyncio
    async def test_unguarded_action_allowed(self):
        registry = ValidatorRegistry()

        result = await registry.validate("send_email", "a@b.c", ValidationContext(actor_id="u1"))

        assert result.valid
        assert await registry.get_whitelist("send_email", "u1") == []

    @pytest.mark.asyncio
    async def test_validator_errors_become_invalid_results(self):
        registry = ValidatorRegistry()
        registry.register(BrokenValidator())

        result = await registry.validate("broken_action", "x", ValidationContext(actor_id="u1"))

        assert not result.valid
        assert "whitelist backend down" in result.error

    def test_register_overwrites(self):
        registry = ValidatorRegistry()
        first, second = PhoneNumberValidator(), PhoneNumberValidator(country_code="49")

        registry.register(first)
        registry.register(second)

        assert registry.get_validator("whatsapp_send_message") is second
        assert registry.has_validator("whatsapp_send_message")
        assert registry.get_all_validators() == [second]
        assert registry.get_stats() == {
            'total_validators': 1,
            'validators': [{'action_name': 'whatsapp_send_message', 'resource_type': 'phone_number'}],
        }

    @pytest.mark.asyncio
    async def test_execute_runs_allowed_action(self):
        registry = ValidatorRegistry()
        registry.register(PhoneNumberValidator())
        send = AsyncMock(return_value="sent")

        result = await registry.execute(
            "whatsapp_send_message", OWNER, ValidationContext(actor_id=OWNER), send, OWNER, text="hi"
        )

        assert result == "sent"
        send.assert_awaited_once_with(OWNER, text="hi")

    @pytest.mark.asyncio
    async def test_execute_denied(self):
        registry = ValidatorRegistry()
        registry.register(PhoneNumberValidator())
        send = AsyncMock()

        with pytest.raises(ActionDeniedError) as exc_info:
            await registry.execute("whatsapp_send_message", "628000", ValidationContext(actor_id=OWNER), send)

        assert not exc_info.value.result.valid
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_execute_dry_run_skips_action(self):
        registry = ValidatorRegistry()
        registry.register(PhoneNumberValidator())
        send = AsyncMock()

        result = await registry.execute(
            "whatsapp_send_message", OWNER, ValidationContext(actor_id=OWNER, dry_run=True), send
        )

        assert result is None
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_initialize_validators_uses_config(self):
        config = ServiceConfig(whitelists={OWNER: ["628111222333"]}, phone_country_code="62")

        registry = initialize_validators(config, ValidatorRegistry())

        assert registry.has_validator("whatsapp_send_message")
        assert await registry.get_whitelist("whatsapp_send_message", OWNER) == [OWNER, "628111222333"]
