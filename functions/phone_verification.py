import asyncio
from typing import Any, Callable

from firebase_functions import logger

from config import PHONE_SMS_PATH, PHONE_STATUS_PATH
from errors import StoreWriteError, TransientReadError
from sms_service import fixed_code
from store import child_path
from watcher import Watcher

SENT_FLAG = "verificationSmsSendToDevice"


class PhoneVerificationWatcher(Watcher):
    """Sends a verification SMS for every new /phone-status entry.

    The code is stored under /phone-sms/{phone}/sms and the status flag is
    set to true only after the SMS collaborator reports success. A failed
    send writes the flag as false so the phone is picked up again by the
    retry sweep (when enabled) or the next child_added replay.
    """

    name = "Phone verification watcher"

    def __init__(
        self,
        store,
        sms,
        *,
        code_factory: Callable[[], str] = fixed_code("1234"),
        status_path: str = PHONE_STATUS_PATH,
        sms_path: str = PHONE_SMS_PATH,
        retry_interval: float = 0.0,
    ):
        super().__init__(store)
        self._sms = sms
        self._code_factory = code_factory
        self.status_path = status_path
        self.sms_path = sms_path
        self.retry_interval = retry_interval
        self._in_flight: set[str] = set()

    async def start(self) -> None:
        self._track(await self._store.on_child_added(self.status_path, self._on_status_added))
        if self.retry_interval > 0:
            self._tasks.append(asyncio.create_task(self._retry_loop()))
        logger.info("Phone verification watcher started...")

    async def _on_status_added(self, phone: str, status: Any) -> None:
        already_sent = status.get(SENT_FLAG) if isinstance(status, dict) else None
        if already_sent:
            logger.info(f"Verification SMS already sent to {phone}")
            return
        await self.send_verification_sms(phone)

    async def send_verification_sms(self, phone: str) -> bool:
        if phone in self._in_flight:
            logger.debug(f"Verification SMS to {phone} already in progress")
            return False
        self._in_flight.add(phone)
        try:
            code = self._code_factory()
            delivered = await self._sms.send(phone, code)
            if not delivered:
                logger.warn(f"Verification SMS to {phone} failed, will retry")
                await self._store.set(child_path(self.status_path, phone, SENT_FLAG), False)
                return False
            await self._store.set(child_path(self.sms_path, phone, "sms"), code)
            await self._store.set(child_path(self.status_path, phone, SENT_FLAG), True)
            logger.info(f"Verification SMS dispatched to {phone}")
            return True
        except StoreWriteError as e:
            logger.error(f"Could not record verification SMS state for {phone}: {e}")
            return False
        finally:
            self._in_flight.discard(phone)

    async def retry_unsent(self) -> int:
        """Re-dispatches every phone whose flag is not true. Returns the number retried."""
        statuses = await self._store.get(self.status_path)
        if not isinstance(statuses, dict):
            return 0
        pending = [
            phone for phone, status in statuses.items()
            if not (isinstance(status, dict) and status.get(SENT_FLAG))
        ]
        for phone in pending:
            await self.send_verification_sms(phone)
        return len(pending)

    async def _retry_loop(self):
        while True:
            await asyncio.sleep(self.retry_interval)
            try:
                retried = await self.retry_unsent()
            except TransientReadError as e:
                logger.warn(f"Verification SMS retry sweep failed: {e}")
                continue
            if retried:
                logger.info(f"Retried verification SMS for {retried} phone(s)")
