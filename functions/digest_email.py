from html import escape
from typing import Any, Iterable, Mapping

WEEKLY_SUBJECT = "This week's top posts!"
WEEKLY_HEADING = "Here are this week's top posts:"


def _fmt(val) -> str:
    return escape(str(val)) if val not in (None, "") else "—"


def build_post_html(post: Mapping[str, Any]) -> str:
    """Renders one post block; every user-supplied field is HTML-escaped."""
    return (
        f'<h2 style="margin:18px 0 6px 0;font-size:18px;color:#111111;">{_fmt(post.get("title"))}</h2>'
        f'<div style="font-size:12px;color:#6b7280;">Author: {_fmt(post.get("author"))}</div>'
        f'<div style="font-size:12px;color:#6b7280;">Stars: {_fmt(post.get("starCount", 0))}</div>'
        f'<p style="margin:8px 0 0 0;font-size:14px;color:#4a5568;">{_fmt(post.get("body"))}</p>'
    )


def build_weekly_top_posts_html(posts: Iterable[Mapping[str, Any]]) -> str:
    """Builds the weekly digest body for posts already in display order.

    Returns: full HTML string ready to pass to `ResendMailer.send`.
    """
    blocks = "".join(build_post_html(post) for post in posts)
    return f"""
    <div style="margin:0;padding:24px;background:#f5f5f5;font-family:Segoe UI, Roboto, Helvetica, Arial, sans-serif;color:#111111;">
      <div style="max-width:620px;margin:0 auto;background:#ffffff;border-radius:12px;padding:24px;">
        <h1 style="margin:0 0 12px 0;font-size:22px;">{escape(WEEKLY_HEADING)}</h1>
        {blocks}
      </div>
    </div>
    """
