from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from html import escape
from typing import Literal, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import Clock
from relay.models.domain import Post

Cadence = Literal["daily", "weekly"]

LOOKBACK_DAYS: dict[str, int] = {"daily": 1, "weekly": 7}
TOP_POSTS = 3


@dataclass(frozen=True)
class DigestContent:
    subject: str
    html: str
    text: str | None = None


class DigestRenderer(Protocol):
    async def render(self, owner_id: str, brand_id: str, cadence: Cadence) -> DigestContent:
        ...


def _snippet(value: str, max_chars: int) -> str:
    value = value.strip()
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 3] + "..."


class RecentPostsDigestRenderer:
    """
    Default digest: a summary of what the brand published in the lookback window.
    Content generation plugs in by implementing ``DigestRenderer``.
    """

    def __init__(self, db: AsyncSession, clock: Clock):
        self._db = db
        self._clock = clock

    async def render(self, owner_id: str, brand_id: str, cadence: Cadence) -> DigestContent:
        days = LOOKBACK_DAYS.get(cadence, 7)
        since = self._clock.now() - timedelta(days=days)

        stmt = (
            select(Post)
            .where(Post.owner_id == owner_id, Post.brand_id == brand_id, Post.posted_at >= since)
            .order_by(Post.posted_at.desc())
        )
        posts = list((await self._db.execute(stmt)).scalars().all())

        by_platform: dict[str, int] = {}
        for p in posts:
            by_platform[p.platform] = by_platform.get(p.platform, 0) + 1

        subject = f"{cadence.capitalize()} marketing digest"
        top = posts[:TOP_POSTS]

        rows = "".join(
            f"<tr><td>{escape(p.platform)}</td><td>{escape(_snippet(p.caption_used or 'No caption captured', 120))}</td></tr>"
            for p in top
        ) or '<tr><td colspan="2">No posts published yet.</td></tr>'
        counts = ", ".join(f"{escape(k)}: {v}" for k, v in sorted(by_platform.items())) or "none"

        html = (
            "<!doctype html>\n"
            f"<html lang=\"en\"><head><meta charset=\"utf-8\" /><title>{escape(subject)}</title></head>"
            "<body style=\"font-family: Arial, sans-serif; max-width: 760px; margin: 0 auto;\">"
            f"<h1>{escape(subject)}</h1>"
            f"<p>Lookback: {days} days. Posts published: {len(posts)} ({counts}).</p>"
            "<h2>Recent posts</h2>"
            f"<table><thead><tr><th>Platform</th><th>Post</th></tr></thead><tbody>{rows}</tbody></table>"
            "</body></html>"
        )

        lines = [subject, "", f"Posts published in the last {days} days: {len(posts)}"]
        lines += [f"- {p.platform}: {_snippet(p.caption_used or '', 80)}" for p in top]
        return DigestContent(subject=subject, html=html, text="\n".join(lines))
