import asyncio
import firebase_admin
from firebase_functions import logger, scheduler_fn

# Initialize the Firebase Admin SDK once
firebase_admin.initialize_app()

# The realtime watchers need a long-lived process (see relay.py); only the
# weekly digest is deployed as a function.
import resend_service
from config import DigestSettings, RelayConfig
from store import RealtimeStore
from weekly_digest import DigestSchedule, WeeklyDigestJob

_SCHEDULE = DigestSchedule.from_settings(DigestSettings.from_env())


@scheduler_fn.on_schedule(schedule=_SCHEDULE.cron(), secrets=[resend_service.RESEND_API_KEY])
def send_weekly_top_posts(event: scheduler_fn.ScheduledEvent) -> None:
    """Sends the weekly top posts email on the Cloud Scheduler trigger."""
    config = RelayConfig.from_env()
    job = WeeklyDigestJob(
        RealtimeStore(max_attempts=config.transaction_max_attempts, base_delay=config.transaction_base_delay),
        resend_service.ResendMailer(config.mail_from),
        top_n=config.digest.top_n,
        schedule=_SCHEDULE,
    )
    report = asyncio.run(job.run_once())
    logger.info(f"Weekly digest run: sent={len(report.sent)} failed={len(report.failed)} skipped={len(report.skipped)}")
