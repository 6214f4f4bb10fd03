"""Long-lived notification relay process.

Starts the enabled watchers against one Realtime Database connection and
runs until SIGINT/SIGTERM, then shuts every component down gracefully.
"""

import asyncio
import signal

import firebase_admin
from firebase_admin import credentials
from firebase_functions import logger

from config import RelayConfig
from custom_tokens import CustomTokenWatcher
from phone_verification import PhoneVerificationWatcher
from resend_service import ResendMailer
from sms_service import SmsSender, fixed_code, random_code
from star_notifications import StarNotifier
from store import RealtimeStore
from token_service import CustomTokenIssuer
from weekly_digest import DigestSchedule, WeeklyDigestJob


def initialize_firebase(config: RelayConfig):
    if firebase_admin._apps:
        return firebase_admin.get_app()
    cred = credentials.Certificate(config.credentials_path) if config.credentials_path else None
    options = {"databaseURL": config.database_url} if config.database_url else None
    return firebase_admin.initialize_app(cred, options)


class Relay:
    def __init__(self, components, *, shutdown_timeout: float = 10.0):
        self.components = list(components)
        self.shutdown_timeout = shutdown_timeout
        self.started = []

    @classmethod
    def from_config(cls, config: RelayConfig, store, mailer, sms, tokens) -> "Relay":
        components = []
        if config.watch_stars:
            components.append(StarNotifier(store, mailer))
        if config.watch_phone_verification:
            code_factory = random_code(config.sms.code_length) if sms.enabled else fixed_code(config.sms.stub_code)
            components.append(
                PhoneVerificationWatcher(
                    store, sms, code_factory=code_factory, retry_interval=config.sms.retry_interval
                )
            )
        if config.watch_token_requests:
            components.append(CustomTokenWatcher(store, tokens))
        if config.digest.enabled:
            components.append(
                WeeklyDigestJob(
                    store,
                    mailer,
                    top_n=config.digest.top_n,
                    schedule=DigestSchedule.from_settings(config.digest),
                )
            )
        return cls(components, shutdown_timeout=config.shutdown_timeout)

    async def start(self) -> None:
        """Starts each component; one failing to start does not stop the others."""
        for component in self.components:
            try:
                await component.start()
            except Exception as e:
                logger.error(f"{component.name} failed to start: {e!r}")
                continue
            self.started.append(component)
        if self.components and not self.started:
            raise RuntimeError("No relay component could be started")

    async def stop(self) -> None:
        started, self.started = self.started, []
        await asyncio.gather(*(c.stop(self.shutdown_timeout) for c in started))
        logger.info("Relay stopped")


async def serve(config: RelayConfig) -> None:
    app = initialize_firebase(config)
    store = RealtimeStore(
        app,
        max_attempts=config.transaction_max_attempts,
        base_delay=config.transaction_base_delay,
    )
    mailer = ResendMailer(config.mail_from)
    sms = SmsSender(config.sms.api_url, config.sms.sender, enabled=config.sms.enabled, timeout=config.sms.timeout)
    relay = Relay.from_config(config, store, mailer, sms, CustomTokenIssuer(app))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await relay.start()
    logger.info(f"Relay running with {len(relay.started)} component(s)")
    try:
        await stop.wait()
    finally:
        await relay.stop()


def main():
    asyncio.run(serve(RelayConfig.from_env()))


if __name__ == "__main__":
    main()
