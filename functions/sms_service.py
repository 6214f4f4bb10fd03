import asyncio
import os
import secrets

import requests
from firebase_functions import logger
from firebase_functions.params import SecretParam

from errors import DeliveryFailure

SMS_API_KEY = SecretParam('SMS_API_KEY')


def get_sms_api_key():
    try:
        val = SMS_API_KEY.value
        if val:
            return val
    except Exception:
        # SecretParam not available in this context
        pass
    return os.getenv('SMS_API_KEY')


def provider_number(phone: str) -> str:
    """The gateway expects the number without its leading '+' or trunk '0'."""
    return phone[1:] if phone[:1] in ("+", "0") else phone


def fixed_code(code: str):
    return lambda: code


def random_code(length: int = 4):
    def generate() -> str:
        return f"{secrets.randbelow(10 ** length):0{length}d}"
    return generate


class SmsSender:
    """SMS collaborator with an on/off switch.

    When disabled no request is made and every send is reported as
    delivered, so the verification flow can run without a gateway.
    """

    def __init__(self, api_url: str, sender: str, *, enabled: bool = False, timeout: float = 10.0, session=None):
        self.api_url = api_url
        self.sender = sender
        self.enabled = enabled
        self.timeout = timeout
        self._session = session or requests.Session()

    async def send(self, phone: str, content: str) -> bool:
        if not self.enabled:
            logger.info(f"SMS provider disabled, not sending to {phone}")
            return True
        try:
            await asyncio.to_thread(self._post, phone, content)
        except DeliveryFailure as e:
            logger.error(str(e))
            return False
        logger.info(f"SMS sent to {phone}")
        return True

    def _post(self, phone: str, content: str) -> None:
        api_key = get_sms_api_key()
        if not api_key:
            raise DeliveryFailure(phone, "SMS_API_KEY is missing")
        try:
            response = self._session.post(
                self.api_url,
                headers={"api_key": api_key},
                data={"from": self.sender, "to": provider_number(phone), "content": content},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DeliveryFailure(phone, str(e)) from e
        if response.status_code != 201:
            raise DeliveryFailure(phone, f"gateway answered {response.status_code}: {response.text[:200]}")
