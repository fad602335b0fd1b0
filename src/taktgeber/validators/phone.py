"""
Phone number validator for outgoing WhatsApp messages
"""

import logging
import re
from typing import Dict, Iterable, List, Optional

from .base import ResourceValidator

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s\-()]")


class PhoneNumberValidator(ResourceValidator):
    """
    Allows messages only to the sender's own number and configured contacts

    Numbers are compared in international form without a leading ``+``;
    a national number starting with ``0`` gets the configured country code.
    """

    action_name = "whatsapp_send_message"
    resource_type = "phone_number"

    def __init__(self, whitelists: Optional[Dict[str, Iterable[str]]] = None, country_code: str = "62"):
        self.country_code = country_code
        self.whitelists: Dict[str, List[str]] = {}
        for actor, numbers in (whitelists or {}).items():
            self.whitelists[self.normalize(str(actor))] = [self.normalize(str(n)) for n in numbers]

    def normalize(self, resource: str) -> str:
        # Drop WhatsApp suffixes such as @c.us or @s.whatsapp.net
        number = resource.split("@", 1)[0]
        number = _SEPARATORS.sub("", number)
        if number.startswith("+"):
            number = number[1:]
        if number.startswith("0"):
            number = self.country_code + number[1:]
        return number

    async def get_whitelist(self, actor_id: str) -> List[str]:
        actor = self.normalize(actor_id)
        whitelist = [actor] + self.whitelists.get(actor, [])

        # Deduplicate, keeping order
        unique = list(dict.fromkeys(whitelist))
        logger.debug(f"Phone whitelist loaded for {actor}: {len(unique)} entries")
        return unique
