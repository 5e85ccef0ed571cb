from __future__ import annotations

from typing import Iterable

from ..domain.models import ContentItem

TWEET_SEPARATOR = "\n---\n\n"


def format_tweet(item: ContentItem, default_author: str) -> str:
    """Render one tweet as a markdown block: header, quoted text, stats line."""

    retweet = "RT " if item.is_retweet else ""
    author = item.author or default_author
    created_at = item.created_at or ""
    quoted = "\n> ".join((item.text or "").split("\n"))
    stats = (
        f"*retweets: {item.retweet_count or 0}, replies: {item.reply_count or 0}, "
        f"likes: {item.like_count or 0}, quotes: {item.quote_count or 0}, views: {item.view_count or 0}*"
    )
    return f"**{retweet}@{author} - {created_at}**\n\n> {quoted}\n\n{stats}"


def format_tweets(items: Iterable[ContentItem], default_author: str) -> str:
    return TWEET_SEPARATOR.join(format_tweet(item, default_author) for item in items)
