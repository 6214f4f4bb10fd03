import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from croniter import croniter
from firebase_functions import logger

from config import POSTS_PATH, USERS_PATH, DigestSettings
from digest_email import WEEKLY_SUBJECT, build_weekly_top_posts_html
from errors import StoreWriteError
from store import child_path, children_items


@dataclass(frozen=True)
class DigestSchedule:
    # 0 = Sunday
    day_of_week: int = 0
    hour: int = 14
    minute: int = 30

    @classmethod
    def from_settings(cls, settings: DigestSettings) -> "DigestSchedule":
        return cls(settings.day_of_week, settings.hour, settings.minute)

    def cron(self) -> str:
        return f"{self.minute} {self.hour} * * {self.day_of_week}"

    def next_run(self, after: datetime) -> datetime:
        """First trigger time strictly later than `after`."""
        return croniter(self.cron(), after).get_next(datetime)


@dataclass
class DigestReport:
    posts: list[str] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def star_count(post: Any) -> int:
    value = post.get("starCount") if isinstance(post, dict) else None
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def rank_top_posts(children: list[tuple[str, Any]], limit: int) -> list[tuple[str, dict]]:
    """Orders posts by star count, highest first; ties keep index order."""
    posts = [(key, post) for key, post in children if isinstance(post, dict)]
    return sorted(posts, key=lambda item: star_count(item[1]), reverse=True)[:limit]


class WeeklyDigestJob:
    """Emails the week's top posts to every user with an email address."""

    name = "Weekly top posts emailer"

    def __init__(
        self,
        store,
        mailer,
        *,
        top_n: int = 5,
        schedule: DigestSchedule = DigestSchedule(),
        posts_path: str = POSTS_PATH,
        users_path: str = USERS_PATH,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._mailer = mailer
        self.top_n = top_n
        self.schedule = schedule
        self.posts_path = posts_path
        self.users_path = users_path
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run_forever())
        logger.info(f"Weekly top posts emailer started, next run {self.schedule.next_run(self._clock()).isoformat()}")

    async def stop(self, timeout: float | None = None) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info(f"{self.name} stopped")

    async def _run_forever(self):
        while True:
            now = self._clock()
            delay = (self.schedule.next_run(now) - now).total_seconds()
            await asyncio.sleep(max(delay, 0))
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Failed to start weekly top posts emailer: {e!r}")

    async def run_once(self) -> DigestReport:
        """Sends one digest round; a read failure raises TransientReadError."""
        children, users = await asyncio.gather(
            self._store.top_children(self.posts_path, "starCount", self.top_n),
            self._store.get(self.users_path),
        )
        top_posts = rank_top_posts(children, self.top_n)
        report = DigestReport(posts=[key for key, _ in top_posts])
        if not top_posts:
            logger.info("No posts yet, skipping weekly top posts email")
            return report

        html = build_weekly_top_posts_html(post for _, post in top_posts)
        recipients = []
        for uid, user in children_items(users):
            email = user.get("email") if isinstance(user, dict) else None
            if email:
                recipients.append((uid, email))
            else:
                report.skipped.append(uid)

        results = await asyncio.gather(
            *(self._send_to(uid, email, html) for uid, email in recipients),
            return_exceptions=True,
        )
        for (uid, email), sent in zip(recipients, results):
            if isinstance(sent, Exception):
                logger.error(f"Failed to send weekly top posts email to: {email}: {sent!r}")
                sent = False
            (report.sent if sent else report.failed).append(uid)
        logger.info(f"Weekly top posts email sent to {len(report.sent)} user(s), {len(report.failed)} failed")
        return report

    async def _send_to(self, uid: str, email: str, html: str) -> bool:
        sent = await self._mailer.send(email, WEEKLY_SUBJECT, html=html)
        if not sent:
            logger.error(f"Failed to send weekly top posts email to: {email}")
            return False
        logger.info(f"Weekly top posts email sent to: {email}")
        # Save the date at which we sent the weekly email.
        try:
            await self._store.set(child_path(self.users_path, uid, "lastSentWeeklyTimestamp"), self._store.SERVER_TIMESTAMP)
        except StoreWriteError as e:
            logger.warn(f"Weekly email sent to {email} but timestamp not saved: {e}")
        return True
