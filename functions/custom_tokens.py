import hmac
from functools import partial
from typing import Any

from firebase_functions import logger

from config import CUSTOM_TOKEN_STATUS_PATH, PHONE_SMS_PATH
from errors import SigningUnavailable, TransientReadError, ValidationSkip
from store import Subscription, child_path
from watcher import Watcher

PREMIUM_CLAIMS = {"premiumAccount": True}


def submitted_code(phone: str, request: Any) -> str:
    """Returns the code the client submitted, or raises ValidationSkip."""
    code = request.get("userSms") if isinstance(request, dict) else None
    if code is None:
        raise ValidationSkip(f"No submitted code for {phone}, custom token not requested yet")
    code = str(code)
    if code == "":
        raise ValidationSkip(f"Submitted code for {phone} is empty, not creating custom token")
    return code


def codes_match(submitted: str, expected: Any) -> bool:
    if expected is None:
        return False
    return hmac.compare_digest(str(submitted).encode("utf-8"), str(expected).encode("utf-8"))


class CustomTokenWatcher(Watcher):
    """Issues a custom token once a client proves it received the SMS code.

    For each /custom-token-status/{phone} request the watcher follows
    /phone-sms/{phone} and compares the stored code with `userSms`. The
    token is written back to the request only, never returned to the client
    any other way, and is written at most once.
    """

    name = "Custom token watcher"

    def __init__(
        self,
        store,
        tokens,
        *,
        requests_path: str = CUSTOM_TOKEN_STATUS_PATH,
        sms_path: str = PHONE_SMS_PATH,
        claims: dict | None = None,
    ):
        super().__init__(store)
        self._tokens = tokens
        self.requests_path = requests_path
        self.sms_path = sms_path
        self.claims = dict(PREMIUM_CLAIMS if claims is None else claims)
        self._pending: dict[str, Subscription] = {}

    async def start(self) -> None:
        self._track(await self._store.on_child_added(self.requests_path, self._on_request_added))
        logger.info("Custom token watcher started...")

    @property
    def pending_phones(self) -> list[str]:
        return [phone for phone, sub in self._pending.items() if not sub.closed]

    async def _on_request_added(self, phone: str, request: Any) -> None:
        try:
            code = submitted_code(phone, request)
        except ValidationSkip as e:
            logger.info(str(e))
            return
        if request.get("customToken"):
            logger.info(f"Custom token already issued for {phone}")
            return

        previous = self._pending.pop(phone, None)
        if previous is not None:
            previous.cancel()
        sms_path = child_path(self.sms_path, phone)
        # the subscription serving this request, once on_value returns
        handle: list[Subscription] = []
        try:
            subscription = await self._store.on_value(sms_path, partial(self._on_server_code, phone, code, handle))
        except TransientReadError as e:
            logger.error(f"Failed to watch /{sms_path}: {e}")
            return
        handle.append(subscription)
        self._pending[phone] = self._track(subscription)

    async def _on_server_code(self, phone: str, code: str, handle: list[Subscription], record: Any) -> None:
        server_code = record.get("sms") if isinstance(record, dict) else None
        if server_code is None:
            logger.info(f"No server code stored for {phone} yet")
            return
        if not codes_match(code, server_code):
            logger.info(f"Submitted code for {phone} does not match")
            return
        if await self.issue_token(phone):
            for subscription in handle:
                # a newer request may have replaced this one meanwhile
                if self._pending.get(phone) is subscription:
                    del self._pending[phone]
                subscription.cancel()

    async def issue_token(self, phone: str) -> bool:
        try:
            token = await self._tokens.mint(phone, self.claims)
        except SigningUnavailable as e:
            logger.error(f"Error creating custom token: {e}")
            return False

        token_path = child_path(self.requests_path, phone, "customToken")
        written = await self._store.transaction(token_path, lambda current: current or token)
        if not written:
            logger.error(f"Could not store custom token for {phone}")
            return False
        logger.info(f"Custom token issued for {phone}")
        return True
