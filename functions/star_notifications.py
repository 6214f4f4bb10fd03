from functools import partial
from typing import Any

from firebase_functions import logger

from config import POSTS_PATH, USER_POSTS_PATH, USERS_PATH
from errors import StoreWriteError, TransientReadError
from store import child_path
from watcher import Watcher

NEW_STAR_SUBJECT = "New star!"
NEW_STAR_TEXT = "One of your posts has received a new star!"


def recount_stars(post: Any) -> Any:
    """Transaction update: derive `starCount` from the current `stars` set."""
    if isinstance(post, dict):
        stars = post.get("stars")
        post["starCount"] = len(stars) if isinstance(stars, dict) else 0
    return post


class StarNotifier(Watcher):
    """Keeps star counts in sync and emails authors about new stars.

    Every post gets two listeners on its `stars` node: one recounts the stars
    on the post and on its `user-posts` copy, the other emails the author
    for each new star. A star delivered twice (reconnect, restart) sends a
    second email; the count stays correct because it is always recomputed.
    """

    name = "Star notifier"

    def __init__(
        self,
        store,
        mailer,
        *,
        posts_path: str = POSTS_PATH,
        user_posts_path: str = USER_POSTS_PATH,
        users_path: str = USERS_PATH,
    ):
        super().__init__(store)
        self._mailer = mailer
        self.posts_path = posts_path
        self.user_posts_path = user_posts_path
        self.users_path = users_path

    async def start(self) -> None:
        self._track(await self._store.on_child_added(self.posts_path, self._on_post_added))
        logger.info("New star notifier started...")
        logger.info("Likes count updater started...")

    async def _on_post_added(self, post_id: str, post: Any) -> None:
        if not isinstance(post, dict):
            logger.warn(f"Ignoring malformed post /{self.posts_path}/{post_id}: {post!r}")
            return
        uid = post.get("uid")
        stars_path = child_path(self.posts_path, post_id, "stars")
        try:
            self._track(await self._store.on_value(stars_path, partial(self._on_stars_changed, post_id, uid)))
        except TransientReadError as e:
            logger.error(f'Failed to add "value" listener at /{stars_path} node: {e}')
        try:
            self._track(await self._store.on_child_added(stars_path, partial(self._on_star_added, post_id, uid)))
        except TransientReadError as e:
            logger.error(f'Failed to add "child_added" listener at /{stars_path} node: {e}')

    async def _on_stars_changed(self, post_id: str, uid: str | None, _stars: Any) -> None:
        await self.update_star_count(child_path(self.posts_path, post_id))
        if uid:
            await self.update_star_count(child_path(self.user_posts_path, uid, post_id))

    async def update_star_count(self, post_path: str) -> bool:
        committed = await self._store.transaction(post_path, recount_stars)
        if not committed:
            logger.error(f"Could not update star count at /{post_path}")
        return committed

    async def _on_star_added(self, post_id: str, uid: str | None, _star_uid: str, _value: Any) -> None:
        if not uid:
            logger.warn(f"Post /{self.posts_path}/{post_id} has no author uid, skipping star notification")
            return
        await self.notify_author(uid, post_id)

    async def notify_author(self, uid: str, post_id: str) -> bool:
        """Emails the author of `post_id` and stamps the notification time."""
        try:
            user = await self._store.get(child_path(self.users_path, uid))
        except TransientReadError as e:
            logger.error(f"Failed to send notification to user {uid}: {e}")
            return False
        email = user.get("email") if isinstance(user, dict) else None
        if not email:
            logger.debug(f"User {uid} has no email, skipping star notification")
            return False

        sent = await self._mailer.send(email, NEW_STAR_SUBJECT, text=NEW_STAR_TEXT)
        if not sent:
            logger.warn(f"Failed to send new star notification to {email}")
            return False
        logger.info(f"New star email notification sent to: {email}")

        # Save the date at which we sent that notification.
        update = {
            child_path(self.posts_path, post_id, "lastNotificationTimestamp"): self._store.SERVER_TIMESTAMP,
            child_path(self.user_posts_path, uid, post_id, "lastNotificationTimestamp"): self._store.SERVER_TIMESTAMP,
        }
        try:
            await self._store.update(update)
        except StoreWriteError as e:
            logger.warn(f"Notification sent but timestamp not saved: {e}")
        return True
